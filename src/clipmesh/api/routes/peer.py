"""Peer endpoints: what other clipmesh instances call during a sync pass."""

import time
from typing import Any

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from clipmesh.daemon import get_daemon
from clipmesh.errors import ProtocolError
from clipmesh.history.models import dump_entries
from clipmesh.sync.protocol import (
    SyncMessage,
    SyncMessageType,
    create_sync_message,
    parse_sync_message,
)
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/peer-id")
def peer_id() -> dict:
    return {"peer_id": get_daemon().config.peer_id}


@router.get("/history")
def history(since: float = 0.0) -> list[dict[str, Any]]:
    """Entries captured strictly after ``since`` (unix seconds)."""
    daemon = get_daemon()
    return dump_entries(daemon.log.entries_since(since))


@router.get("/status")
def status() -> dict:
    return get_daemon().get_status()


@router.post("/sync")
async def sync(request: Request) -> dict:
    """Answer one sync envelope."""
    try:
        raw = await request.json()
    except ValueError as e:
        raise ProtocolError("Request body is not valid JSON") from e

    message = parse_sync_message(raw)
    reply = await run_in_threadpool(handle_sync_message, message)
    return reply.model_dump(mode="json")


def handle_sync_message(message: SyncMessage) -> SyncMessage:
    daemon = get_daemon()
    local_id = daemon.config.peer_id

    if message.message_type == SyncMessageType.HANDSHAKE:
        daemon.last_seen[message.peer_id] = time.time()
        logger.debug(f"Handshake from {message.peer_id}")
        return create_sync_message(SyncMessageType.HANDSHAKE, local_id)

    if message.message_type == SyncMessageType.CLIPBOARD_SYNC:
        entries = message.entries
        if entries is None:
            raise ProtocolError("ClipboardSync message carries no entries")
        result = daemon.receive_entries(message.peer_id, entries)
        logger.info(
            f"Received {len(entries)} entries from {message.peer_id} "
            f"({result.added} new, {result.duplicates} duplicates)"
        )
        return create_sync_message(SyncMessageType.CLIPBOARD_SYNC, local_id)

    if message.message_type == SyncMessageType.HISTORY_REQUEST:
        since = message.since or 0.0
        return create_sync_message(
            SyncMessageType.HISTORY_RESPONSE,
            local_id,
            entries=daemon.log.entries_since(since),
        )

    raise ProtocolError(f"Unsupported message type: {message.message_type.value}")


@router.post("/append")
async def append(request: dict) -> dict:
    """Append a value captured by a local tool (``clipmesh history append``)."""
    content = request.get("content")
    if not isinstance(content, str) or not content:
        raise ProtocolError("Append request needs non-empty 'content'")

    entry = await run_in_threadpool(get_daemon().capture, content)
    return {"entry": entry.to_record()}
