"""clipmesh sync daemon.

One process runs:
- the HTTP peer service (FastAPI under uvicorn)
- the periodic sync ticker
- the broadcast node, when enabled
- the clipboard watcher, when a clipboard reader is supplied

The module also owns the pid-file based process lifecycle used by the
``clipmesh daemon`` commands.
"""

import asyncio
import os
import signal
import subprocess
import sys
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import AsyncGenerator

import httpx
import psutil
import uvicorn
from fastapi import FastAPI

from clipmesh import __version__
from clipmesh.config import SyncConfig, daemon_url, ensure_config_dir, get_pid_path, load_config
from clipmesh.errors import ClipmeshError, ProtocolError
from clipmesh.history.merge import MergeResult
from clipmesh.history.models import ClipboardEntry, migrate_record
from clipmesh.history.store import EntryLog
from clipmesh.p2p.node import P2PNode
from clipmesh.p2p.registry import PeerRegistry
from clipmesh.sync.engine import SyncEngine, SyncReport
from clipmesh.utils.logging import get_logger, setup_logging
from clipmesh.watcher import ClipboardWatcher

logger = get_logger(__name__)

INTER_PASS_DELAY = 0.1
IDLE_SLEEP = 3600


class SyncDaemon:
    """Main clipmesh daemon process."""

    def __init__(
        self,
        config: SyncConfig | None = None,
        log: EntryLog | None = None,
        registry: PeerRegistry | None = None,
        clipboard_reader: Callable[[], str | None] | None = None,
        dev_mode: bool = False,
    ) -> None:
        self.config = config or load_config()
        self.log = log or EntryLog(max_entries=self.config.max_entries)
        self.engine = SyncEngine(self.config, self.log)
        self.registry = registry
        self.clipboard_reader = clipboard_reader
        self.dev_mode = dev_mode
        self.running = False
        self.started_at: datetime | None = None

        # Components (initialized on start)
        self.node: P2PNode | None = None
        self.watcher: ClipboardWatcher | None = None
        self._ticker_task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()

        # Stats
        self.passes_run = 0
        self.peer_successes = 0
        self.peer_failures = 0
        self.entries_received = 0
        self.entries_captured = 0
        self.last_report: SyncReport | None = None
        self.last_seen: dict[str, float] = {}

    @property
    def uptime_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return (datetime.now() - self.started_at).total_seconds()

    async def start(self) -> None:
        logger.info(f"Starting clipmesh daemon v{__version__} as {self.config.peer_id}")

        config_dir = ensure_config_dir()
        logger.info(f"State directory: {config_dir}")

        if self.config.p2p.enabled:
            if self.registry is None:
                self.registry = PeerRegistry()
            self.node = P2PNode(
                self.log,
                self.registry,
                self.config.p2p,
                strategy=self.config.conflict_resolution,
            )
            await self.node.start()
            self.log.on_append = self.node.notify

        if self.clipboard_reader is not None:
            self.watcher = ClipboardWatcher(self.clipboard_reader)
            self.watcher.on_clipboard_change = self._on_clipboard_change
            self.watcher.start()

        self.running = True
        self.started_at = datetime.now()

        self._ticker_task = asyncio.create_task(self.run_ticker())
        logger.info(
            f"Sync ticker started (auto_sync={self.config.auto_sync}, "
            f"interval={self.config.sync_interval_seconds}s, peers={len(self.config.enabled_peers())})"
        )

    async def stop(self) -> None:
        logger.info("Stopping clipmesh daemon...")
        self.running = False
        self._shutdown_event.set()

        if self.watcher:
            self.watcher.stop()

        if self._ticker_task:
            self._ticker_task.cancel()
            try:
                await self._ticker_task
            except asyncio.CancelledError:
                pass
            logger.info("Sync ticker stopped.")

        if self.node:
            await self.node.stop()
            self.log.on_append = None

        self.engine.tunnels.close_all()
        logger.info("clipmesh daemon stopped.")

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    async def run_ticker(self) -> None:
        """Run a sync pass every interval until stopped."""
        while self.running:
            try:
                if not self.config.auto_sync:
                    await asyncio.sleep(IDLE_SLEEP)
                    continue

                await asyncio.sleep(self.config.sync_interval_seconds)
                await self.run_sync_pass()
                await asyncio.sleep(INTER_PASS_DELAY)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sync ticker error: {e}")
                await asyncio.sleep(1)

    async def run_sync_pass(self) -> SyncReport:
        report = await self.engine.sync_with_peers()
        self.passes_run += 1
        self.peer_successes += report.succeeded
        self.peer_failures += report.failed
        self.last_report = report
        return report

    def receive_entries(self, peer_id: str, entries: list[ClipboardEntry]) -> MergeResult:
        """Merge entries a peer pushed to us."""
        result = self.log.merge_remote(entries, self.config.conflict_resolution)
        self.entries_received += result.added + result.replaced
        self.last_seen[peer_id] = time.time()
        return result

    def capture(self, content: str) -> ClipboardEntry:
        """Append a locally captured value; broadcast mode picks it up from the log hook."""
        entry = self.log.append(content)
        self.entries_captured += 1
        return entry

    def _on_clipboard_change(self, content: str) -> None:
        """Handle new clipboard content from the watcher thread."""
        self.capture(content)

    def get_status(self) -> dict:
        try:
            history_size = len(self.log.load())
        except ClipmeshError:
            history_size = None

        peers = {}
        for peer_id, peer in self.config.peers.items():
            watermark = self.engine.watermarks.get(peer_id)
            peers[peer_id] = {
                "endpoint": peer.endpoint,
                "enabled": peer.enabled,
                "connection": peer.connection_type,
                "watermark": watermark,
                "last_seen": self.last_seen.get(peer_id),
            }

        return {
            "version": __version__,
            "peer_id": self.config.peer_id,
            "running": self.running,
            "uptime_seconds": self.uptime_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "sync_enabled": self.config.enabled,
            "auto_sync": self.config.auto_sync,
            "sync_interval_seconds": self.config.sync_interval_seconds,
            "conflict_resolution": str(self.config.conflict_resolution),
            "history_size": history_size,
            "last_sync": self.engine.last_sync,
            "peers": peers,
            "stats": {
                "passes_run": self.passes_run,
                "peer_successes": self.peer_successes,
                "peer_failures": self.peer_failures,
                "entries_received": self.entries_received,
                "entries_captured": self.entries_captured,
            },
            "p2p": {
                "enabled": self.config.p2p.enabled,
                "running": self.node.running if self.node else False,
                "known_peers": len(self.registry) if self.registry is not None else 0,
            },
        }


# Global daemon instance
_daemon: SyncDaemon | None = None


def get_daemon() -> SyncDaemon:
    if _daemon is None:
        raise RuntimeError("Daemon not initialized")
    return _daemon


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Peer service starting...")
    if _daemon is not None:
        await _daemon.start()
    yield
    logger.info("Peer service shutting down...")
    if _daemon is not None:
        await _daemon.stop()


def create_app(daemon: SyncDaemon | None = None) -> FastAPI:
    global _daemon

    state, pid = daemon_status(pid_path)
    if state == DaemonAction.RUNNING:
        raise ClipmeshError(f"clipmesh daemon is already running (pid {pid})")
    _daemon = daemon
    from clipmesh.api.server import create_api_app
    return create_api_app(lifespan=lifespan)


class DaemonAction(str, Enum):
    """What a lifecycle command found or did."""
    STARTED = "started"
    ALREADY_RUNNING = "already_running"
    DISABLED = "disabled"
    NOT_RUNNING = "not_running"
    STALE_CLEANED = "stale_cleaned"
    STOPPED = "stopped"
    RUNNING = "running"


def read_pid(pid_path: Path | None = None) -> int | None:
    """Pid recorded in the pid file, or None if there is no usable file."""
    pid_path = pid_path or get_pid_path()
    try:
        return int(pid_path.read_text().strip())
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        logger.warning(f"Ignoring unreadable pid file {pid_path}")
        return None


def is_process_alive(pid: int) -> bool:
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def write_pid(pid_path: Path | None = None) -> None:
    pid_path = pid_path or get_pid_path()
    try:
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()))
    except OSError as e:
        raise ClipmeshError(f"Cannot write pid file {pid_path}: {e}") from e


def remove_pid(pid_path: Path | None = None) -> None:
    pid_path = pid_path or get_pid_path()
    pid_path.unlink(missing_ok=True)


def daemon_status(pid_path: Path | None = None) -> tuple[DaemonAction, int | None]:
    """Report whether the daemon runs, cleaning up a stale pid file."""
    pid_path = pid_path or get_pid_path()
    if not pid_path.exists():
        return DaemonAction.NOT_RUNNING, None

    pid = read_pid(pid_path)
    if pid is not None and is_process_alive(pid):
        return DaemonAction.RUNNING, pid

    remove_pid(pid_path)
    return DaemonAction.STALE_CLEANED, pid


def start_daemon(
    config: SyncConfig | None = None,
    pid_path: Path | None = None,
) -> tuple[DaemonAction, int | None]:
    """Start the daemon as a detached background process."""
    config = config or load_config()
    if not config.enabled:
        return DaemonAction.DISABLED, None

    state, pid = daemon_status(pid_path)
    if state == DaemonAction.RUNNING:
        return DaemonAction.ALREADY_RUNNING, pid

    config_dir = ensure_config_dir()
    with open(config_dir / "logs" / "daemon.out", "ab") as out:
        proc = subprocess.Popen(
            [sys.executable, "-m", "clipmesh.cli", "daemon", "run"],
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    logger.info(f"Started sync daemon with pid {proc.pid}")
    return DaemonAction.STARTED, proc.pid


def stop_daemon(pid_path: Path | None = None) -> tuple[DaemonAction, int | None]:
    """Send SIGTERM to a running daemon."""
    pid_path = pid_path or get_pid_path()
    state, pid = daemon_status(pid_path)
    if state != DaemonAction.RUNNING:
        return state, pid

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        remove_pid(pid_path)
        return DaemonAction.STALE_CLEANED, pid

    remove_pid(pid_path)
    logger.info(f"Stopped sync daemon with pid {pid}")
    return DaemonAction.STOPPED, pid


def run_daemon(
    host: str | None = None,
    port: int | None = None,
    dev_mode: bool = False,
    config: SyncConfig | None = None,
    pid_path: Path | None = None,
) -> None:
    """Run the daemon in the foreground until a signal arrives."""
    global _daemon

    state, pid = daemon_status(pid_path)
    if state == DaemonAction.RUNNING:
        raise ClipmeshError(f"clipmesh daemon is already running (pid {pid})")

    log_level = "DEBUG" if dev_mode else "INFO"
    setup_logging(level=log_level)

    config = config or load_config()
    host = host or config.listen_host
    port = port or config.listen_port

    write_pid(pid_path)
    try:
        _daemon = SyncDaemon(config=config, dev_mode=dev_mode)
        app = create_app(_daemon)

        def handle_signal(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}, initiating shutdown...")
            if _daemon:
                _daemon._shutdown_event.set()

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        logger.info(f"Starting peer service on {host}:{port}")
        uvicorn.run(app, host=host, port=port, log_level="warning" if not dev_mode else "info")
    finally:
        remove_pid(pid_path)


def append_via_daemon(
    content: str,
    config: SyncConfig | None = None,
    pid_path: Path | None = None,
    transport: httpx.BaseTransport | None = None,
) -> ClipboardEntry | None:
    """Hand a new entry to the running daemon so broadcast mode sees it.

    Returns None when no daemon is running or it did not take the entry;
    the caller then appends to the file itself.
    """
    state, _ = daemon_status(pid_path)
    if state != DaemonAction.RUNNING:
        return None

    config = config or load_config()
    try:
        with httpx.Client(transport=transport, timeout=config.request_timeout) as client:
            response = client.post(daemon_url(config, "/append"), json={"content": content})
            response.raise_for_status()
            return migrate_record(response.json()["entry"])
    except (httpx.HTTPError, ValueError, KeyError, TypeError, ProtocolError) as e:
        logger.warning(f"Daemon did not take the new entry ({e}), appending directly")
        return None
