"""HTTP client side of the peer protocol."""

from typing import Any

import httpx

from clipmesh.errors import ProtocolError, TransportError
from clipmesh.history.models import ClipboardEntry, parse_entries
from clipmesh.sync.protocol import (
    SyncMessage,
    SyncMessageType,
    create_sync_message,
    parse_sync_message,
)
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)

HEALTH_TIMEOUT = 5.0


class PeerClient:
    """Talks to one peer's HTTP sync service.

    Use as an async context manager so the connection pool is closed::

        async with PeerClient("http://10.0.0.5:8080") as client:
            await client.handshake("me@laptop-abcd")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transfer_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transfer_timeout = transfer_timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "PeerClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        try:
            response = await self._client.request(
                method,
                path,
                timeout=timeout or self.timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out", peer=self.base_url) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}", peer=self.base_url) from e

        if not response.is_success:
            raise TransportError(
                f"{method} {path} failed with status {response.status_code}",
                peer=self.base_url,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"{method} {path} returned invalid JSON") from e

    async def health(self) -> dict:
        return await self._request("GET", "/health", timeout=HEALTH_TIMEOUT)

    async def remote_peer_id(self) -> str:
        body = await self._request("GET", "/peer-id")
        if not isinstance(body, dict) or not isinstance(body.get("peer_id"), str):
            raise ProtocolError("Malformed /peer-id response")
        return body["peer_id"]

    async def handshake(self, local_peer_id: str) -> SyncMessage:
        """Exchange identities; the reply must itself be a Handshake."""
        message = create_sync_message(SyncMessageType.HANDSHAKE, local_peer_id)
        reply = parse_sync_message(
            await self._request("POST", "/sync", json=message.model_dump(mode="json"))
        )
        if reply.message_type != SyncMessageType.HANDSHAKE:
            raise ProtocolError(f"Expected Handshake reply, got {reply.message_type.value}")
        logger.debug(f"Handshake with {reply.peer_id} at {self.base_url}")
        return reply

    async def fetch_history(self, since: float = 0.0) -> list[ClipboardEntry]:
        """Entries the peer captured after ``since`` (unix seconds)."""
        body = await self._request(
            "GET",
            "/history",
            params={"since": since},
            timeout=self.transfer_timeout,
        )
        return parse_entries(body)

    async def push_entries(self, local_peer_id: str, entries: list[ClipboardEntry]) -> SyncMessage:
        message = create_sync_message(
            SyncMessageType.CLIPBOARD_SYNC,
            local_peer_id,
            entries=entries,
        )
        reply = parse_sync_message(
            await self._request(
                "POST",
                "/sync",
                json=message.model_dump(mode="json"),
                timeout=self.transfer_timeout,
            )
        )
        if reply.message_type != SyncMessageType.CLIPBOARD_SYNC:
            raise ProtocolError(f"Expected ClipboardSync ack, got {reply.message_type.value}")
        return reply
