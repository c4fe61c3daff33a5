"""Broadcast mode: push every new entry straight to known peers over TCP.

Each connection carries newline-terminated JSON messages::

    {"NewEntry": {...entry...}}
    {"RequestHistory": null}
    {"History": [...entries...]}

A ``RequestHistory`` is answered with one ``History`` line on the same
connection. Anyone who connects to us is remembered as a peer.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

from clipmesh.config import P2PConfig
from clipmesh.errors import ClipmeshError, ConfigError, ProtocolError, StoreError, TransportError
from clipmesh.history.conflict import ConflictResolutionStrategy
from clipmesh.history.models import ClipboardEntry, dump_entries, migrate_record, parse_entries
from clipmesh.history.store import EntryLog
from clipmesh.p2p.registry import PeerRegistry, normalize_address, split_address
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)

NEW_ENTRY = "NewEntry"
REQUEST_HISTORY = "RequestHistory"
HISTORY = "History"

# Full histories travel as a single line
MAX_LINE_BYTES = 16 * 1024 * 1024


def encode_message(kind: str, payload: Any = None) -> bytes:
    return json.dumps({kind: payload}, ensure_ascii=False).encode("utf-8") + b"\n"


def decode_message(line: bytes) -> tuple[str, Any]:
    """Split one line into (kind, payload).

    Raises:
        ProtocolError: Not JSON, or not one of the known message kinds.
    """
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid broadcast message: {e}") from e

    # A bare "RequestHistory" string is accepted as well
    if data == REQUEST_HISTORY:
        return REQUEST_HISTORY, None

    if not isinstance(data, dict) or len(data) != 1:
        raise ProtocolError("Broadcast message must be an object with one key")

    kind, payload = next(iter(data.items()))
    if kind not in (NEW_ENTRY, REQUEST_HISTORY, HISTORY):
        raise ProtocolError(f"Unknown broadcast message: {kind}")
    return kind, payload


@dataclass
class BroadcastResult:
    succeeded: int = 0
    failed: int = 0
    merged: int = 0


class P2PNode:
    """Listener plus outbound dispatcher for broadcast mode."""

    def __init__(
        self,
        log: EntryLog,
        registry: PeerRegistry,
        config: P2PConfig | None = None,
        strategy: ConflictResolutionStrategy | None = None,
    ) -> None:
        self.log = log
        self.registry = registry
        self.config = config or P2PConfig()
        self.strategy = strategy
        self.messages_received = 0
        self.messages_sent = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._server: asyncio.AbstractServer | None = None
        self._dispatcher: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Port actually bound, which differs from the config when it is 0."""
        if self._server is None or not self._server.sockets:
            return self.config.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.config.queue_size)
        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                self.config.host,
                self.config.port,
                limit=MAX_LINE_BYTES,
            )
        except OSError as e:
            raise TransportError(
                f"Cannot listen on {self.config.host}:{self.config.port}: {e}"
            ) from e
        self._dispatcher = asyncio.create_task(self._dispatch())
        logger.info(f"Broadcast listener on {self.config.host}:{self.port}")

    async def stop(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("Broadcast listener stopped")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    def notify(self, entry: ClipboardEntry) -> None:
        """Queue a new local entry for broadcast. Safe to call from any thread."""
        if self._loop is None or self._queue is None or self._loop.is_closed():
            logger.debug("Broadcast node not running, entry not sent")
            return
        message = encode_message(NEW_ENTRY, entry.to_record())
        self._loop.call_soon_threadsafe(self._enqueue, message)

    def _enqueue(self, message: bytes) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Broadcast queue is full, dropping entry")

    async def _dispatch(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                addresses = self.registry.addresses()
                if addresses:
                    await asyncio.gather(*(self._deliver(address, message) for address in addresses))
            except Exception as e:
                logger.error(f"Broadcast dispatch failed: {e}")
            finally:
                self._queue.task_done()

    async def _deliver(self, address: str, message: bytes) -> None:
        try:
            await self._send(address, message)
            self.messages_sent += 1
        except ClipmeshError as e:
            logger.warning(f"Could not reach broadcast peer {address}: {e}")

    async def _open(self, address: str) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            host, port = split_address(address, self.config.port)
        except ConfigError as e:
            raise TransportError(str(e), peer=address) from e
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=MAX_LINE_BYTES),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(f"Connection to {address} timed out", peer=address) from e
        except OSError as e:
            raise TransportError(f"Connection to {address} failed: {e}", peer=address) from e

    async def _send(self, address: str, message: bytes) -> None:
        _, writer = await self._open(address)
        try:
            writer.write(message)
            await writer.drain()
        except OSError as e:
            raise TransportError(f"Send to {address} failed: {e}", peer=address) from e
        finally:
            await _close(writer)

    async def _fetch_history(self, address: str) -> list[ClipboardEntry]:
        reader, writer = await self._open(address)
        try:
            writer.write(encode_message(REQUEST_HISTORY))
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), timeout=self.config.read_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"No history reply from {address}", peer=address) from e
        except (OSError, ValueError) as e:
            raise TransportError(f"History request to {address} failed: {e}", peer=address) from e
        finally:
            await _close(writer)

        if not line:
            raise TransportError(f"{address} closed the connection without a reply", peer=address)

        kind, payload = decode_message(line)
        if kind != HISTORY:
            raise ProtocolError(f"Expected History from {address}, got {kind}")
        return parse_entries(payload)

    async def request_history(self) -> BroadcastResult:
        """Ask every known peer for its full history and merge the replies."""
        result = BroadcastResult()
        loop = asyncio.get_running_loop()

        async def one(address: str) -> None:
            try:
                entries = await self._fetch_history(address)
                merged = await loop.run_in_executor(None, self.log.merge_remote, entries, self.strategy)
            except ClipmeshError as e:
                logger.warning(f"History request to {address} failed: {e}")
                result.failed += 1
                return
            result.succeeded += 1
            result.merged += merged.added + merged.replaced

        await asyncio.gather(*(one(address) for address in self.registry.addresses()))
        return result

    async def is_reachable(self, address: str) -> bool:
        """True if something accepts connections at ``address``."""
        try:
            _, writer = await self._open(address)
        except TransportError:
            return False
        await _close(writer)
        return True

    async def connect(self, address: str) -> str:
        """Check a peer is reachable and remember it. Returns the normalized address."""
        address = normalize_address(address, self.config.port)
        _, writer = await self._open(address)
        await _close(writer)
        self.registry.add(address)
        return address

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peername = writer.get_extra_info("peername")
        if peername:
            self.registry.add(normalize_address(peername[0], self.port))

        try:
            while True:
                line = await asyncio.wait_for(reader.readline(), timeout=self.config.read_timeout)
                if not line:
                    break
                await self._handle_message(line, writer)
        except asyncio.TimeoutError:
            logger.debug(f"Broadcast connection from {peername} went idle")
        except (ProtocolError, StoreError) as e:
            logger.warning(f"Bad broadcast message from {peername}: {e}")
        except (OSError, ValueError) as e:
            logger.debug(f"Broadcast connection from {peername} failed: {e}")
        finally:
            await _close(writer)

    async def _handle_message(self, line: bytes, writer: asyncio.StreamWriter) -> None:
        kind, payload = decode_message(line)
        self.messages_received += 1
        loop = asyncio.get_running_loop()

        if kind == NEW_ENTRY:
            entries = [migrate_record(payload)]
            await loop.run_in_executor(None, self.log.merge_remote, entries, self.strategy)
        elif kind == HISTORY:
            entries = parse_entries(payload)
            await loop.run_in_executor(None, self.log.merge_remote, entries, self.strategy)
        elif kind == REQUEST_HISTORY:
            entries = await loop.run_in_executor(None, self.log.load)
            writer.write(encode_message(HISTORY, dump_entries(entries)))
            await writer.drain()


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
