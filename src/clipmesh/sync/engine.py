"""Periodic pull/push synchronization with configured peers.

One pass with a peer runs these steps, and a failure at any step ends that
peer's pass without touching other peers:

1. Resolve   - direct URL, or ensure the SSH tunnel and use its local port.
2. Handshake - exchange peer ids.
3. Pull      - fetch entries newer than the peer's watermark, merge them.
4. Push      - send local entries newer than the watermark, minus what was
               just pulled from that peer.
5. Commit    - advance the watermark to the time the pass started.

Watermarks live in memory only, so the first pass after a restart is a full
exchange; merging makes that safe.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx

from clipmesh.config import PeerConfig, SyncConfig, validate_http_endpoint
from clipmesh.errors import ClipmeshError, ConfigError, TransportError
from clipmesh.history.store import EntryLog
from clipmesh.sync.client import PeerClient
from clipmesh.sync.tunnel import SshTunnelManager
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PeerSyncResult:
    """Outcome of one pass with one peer."""
    peer_id: str
    success: bool = False
    endpoint: str | None = None
    remote_peer_id: str | None = None
    pulled: int = 0
    merged: int = 0
    pushed: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncReport:
    """Outcome of a pass over every enabled peer."""
    results: list[PeerSyncResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class SyncEngine:
    """Runs sync passes for one local log against its configured peers."""

    def __init__(
        self,
        config: SyncConfig,
        log: EntryLog | None = None,
        tunnels: SshTunnelManager | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.log = log or EntryLog(max_entries=config.max_entries)
        self.tunnels = tunnels or SshTunnelManager()
        self.watermarks: dict[str, float] = {}
        self.last_sync: float | None = None
        self._transport = transport
        self._peer_locks: dict[str, asyncio.Lock] = {}

    def get_watermark(self, peer_id: str) -> float:
        return self.watermarks.get(peer_id, 0.0)

    def client_for(self, endpoint: str) -> PeerClient:
        return PeerClient(
            endpoint,
            timeout=self.config.request_timeout,
            transfer_timeout=self.config.transfer_timeout,
            transport=self._transport,
        )

    async def resolve_endpoint(self, peer: PeerConfig) -> str:
        """Base URL to reach ``peer``, starting its SSH tunnel if needed."""
        if peer.ssh_tunnel is not None:
            return await self.tunnels.ensure_tunnel(peer.ssh_tunnel)
        try:
            return validate_http_endpoint(peer.endpoint)
        except ConfigError as e:
            raise TransportError(str(e), peer=peer.endpoint) from e

    async def sync_with_peers(self) -> SyncReport:
        """Run one pass against every enabled peer concurrently."""
        if not self.config.enabled:
            logger.debug("Sync is disabled, skipping pass")
            return SyncReport()

        peers = self.config.enabled_peers()
        if not peers:
            logger.debug("No enabled peers to sync with")
            return SyncReport()

        results = await asyncio.gather(
            *(self.sync_with_peer(peer_id, peer) for peer_id, peer in peers.items())
        )
        report = SyncReport(results=list(results))
        self.last_sync = time.time()

        logger.info(f"Sync pass finished: {report.succeeded} succeeded, {report.failed} failed")
        return report

    async def sync_peer(self, peer_id: str) -> PeerSyncResult:
        """Run one pass against a single configured peer, enabled or not."""
        peer = self.config.peers.get(peer_id)
        if peer is None:
            return PeerSyncResult(peer_id=peer_id, error=f"Unknown peer: {peer_id}")
        return await self.sync_with_peer(peer_id, peer)

    async def sync_with_peer(self, peer_id: str, peer: PeerConfig) -> PeerSyncResult:
        """Run one pass with one peer. Never raises; failures land in ``result.error``."""
        result = PeerSyncResult(peer_id=peer_id)
        lock = self._peer_locks.setdefault(peer_id, asyncio.Lock())

        async with lock:
            try:
                await self._run_pass(peer_id, peer, result)
                result.success = True
            except ClipmeshError as e:
                result.error = str(e)
                logger.warning(f"Sync with {peer_id} failed: {e}")
            except Exception as e:
                result.error = f"{type(e).__name__}: {e}"
                logger.error(f"Sync with {peer_id} failed unexpectedly: {result.error}")

        return result

    async def _run_pass(self, peer_id: str, peer: PeerConfig, result: PeerSyncResult) -> None:
        started = time.time()
        loop = asyncio.get_running_loop()
        since = self.get_watermark(peer_id)

        endpoint = await self.resolve_endpoint(peer)
        result.endpoint = endpoint

        async with self.client_for(endpoint) as client:
            reply = await client.handshake(self.config.peer_id)
            result.remote_peer_id = reply.peer_id

            remote_entries = await client.fetch_history(since)
            result.pulled = len(remote_entries)
            if remote_entries:
                merged = await loop.run_in_executor(
                    None, self.log.merge_remote, remote_entries, self.config.conflict_resolution
                )
                result.merged = merged.added + merged.replaced

            received = {entry.dedup_key for entry in remote_entries}
            outgoing = [
                entry for entry in await loop.run_in_executor(None, self.log.entries_since, since)
                if entry.dedup_key not in received
            ]
            if outgoing:
                await client.push_entries(self.config.peer_id, outgoing)
                result.pushed = len(outgoing)

        self.watermarks[peer_id] = started
        logger.debug(
            f"Synced with {peer_id}: pulled {result.pulled}, merged {result.merged}, "
            f"pushed {result.pushed}"
        )

    async def test_peer(self, peer_id: str) -> PeerSyncResult:
        """Check that a peer is reachable and answers a handshake."""
        result = PeerSyncResult(peer_id=peer_id)
        peer = self.config.peers.get(peer_id)
        if peer is None:
            result.error = f"Unknown peer: {peer_id}"
            return result

        try:
            endpoint = await self.resolve_endpoint(peer)
            result.endpoint = endpoint
            async with self.client_for(endpoint) as client:
                await client.health()
                reply = await client.handshake(self.config.peer_id)
            result.remote_peer_id = reply.peer_id
            result.success = True
        except ClipmeshError as e:
            result.error = str(e)

        return result
