"""Entry log - durable, ordered storage of clipboard entries.

The log is a single JSON array on disk. It is the one piece of mutable state
shared by every writer (local appends, merges after a pull, merges of pushed
entries, broadcast imports, and ``clipmesh history`` commands running in
another process), so every read-modify-write runs under a per-file lock that
other processes honour too, and every write replaces the file atomically.
"""

import fcntl
import json
import os
import tempfile
import threading
import uuid
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from clipmesh.errors import CorruptStore, ProtocolError, StoreError
from clipmesh.history.conflict import ConflictResolutionStrategy
from clipmesh.history.merge import MergeResult, merge, sort_entries
from clipmesh.history.models import (
    ClipboardEntry,
    dump_entries,
    migrate_record,
    now_timestamp,
    parse_timestamp,
    timestamp_from_unix,
)
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)

# One lock per resolved file path, shared by every EntryLog instance
_file_locks: dict[Path, "LogLock"] = {}
_file_locks_guard = threading.Lock()


class LogLock:
    """Exclusive lock on one history file, across threads and processes.

    Threads in this process queue on an RLock; the first holder also takes
    ``flock`` on a ``<log>.lock`` sidecar so other processes wait too.
    Re-entering from the holding thread does not touch the OS lock again.
    """

    def __init__(self, path: Path) -> None:
        self.lock_path = path.with_name(f"{path.name}.lock")
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._fd: int | None = None

    def __enter__(self) -> "LogLock":
        self._thread_lock.acquire()
        if self._depth == 0:
            try:
                self._fd = self._acquire_file_lock()
            except StoreError:
                self._thread_lock.release()
                raise
        self._depth += 1
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._depth -= 1
        if self._depth == 0 and self._fd is not None:
            # Closing the descriptor drops the flock
            os.close(self._fd)
            self._fd = None
        self._thread_lock.release()

    def _acquire_file_lock(self) -> int:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StoreError(f"Cannot open lock file {self.lock_path}: {e}") from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as e:
            os.close(fd)
            raise StoreError(f"Cannot lock {self.lock_path}: {e}") from e
        return fd


def _lock_for(path: Path) -> LogLock:
    key = path.expanduser().resolve()
    with _file_locks_guard:
        if key not in _file_locks:
            _file_locks[key] = LogLock(key)
        return _file_locks[key]


class EntryLog:
    """The local clipboard history file."""

    def __init__(
        self,
        path: Path | None = None,
        device_id: str | None = None,
        max_entries: int | None = None,
        on_append: Callable[[ClipboardEntry], None] | None = None,
    ) -> None:
        if path is None:
            from clipmesh.config import get_history_path
            path = get_history_path()
        self.path = path
        self.max_entries = max_entries
        self.on_append = on_append
        self._device_id = device_id
        self._lock = _lock_for(path)

    @property
    def device_id(self) -> str:
        if self._device_id is None:
            from clipmesh.utils.identity import get_device_id
            self._device_id = get_device_id()
        return self._device_id

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the log lock across several operations."""
        with self._lock:
            yield

    def load(self) -> list[ClipboardEntry]:
        """All stored entries in file order.

        Raises:
            CorruptStore: The file has content that cannot be decoded.
            StoreError: The file exists but cannot be read.
        """
        with self._lock:
            return self._read()

    def write(self, entries: Iterable[ClipboardEntry]) -> None:
        """Replace the stored history. An empty history is written as ``[]``."""
        with self._lock:
            self._write(list(entries))

    def append(self, value: str | ClipboardEntry) -> ClipboardEntry:
        """Add one entry and persist it immediately.

        Missing ids and the capture timestamp are filled in here. The
        ``on_append`` hook runs after the write and can never fail the caller.
        """
        with self._lock:
            entries = self._read()
            entry = self._prepare(value, entries)
            entries.append(entry)
            self._write(entries)

        logger.debug(f"Appended entry {entry.entry_id} ({len(entry.content)} chars)")

        if self.on_append is not None:
            try:
                self.on_append(entry)
            except Exception as e:
                logger.warning(f"Append notification failed: {e}")

        return entry

    def entries_since(self, since: float) -> list[ClipboardEntry]:
        """Entries captured strictly after ``since`` (unix seconds)."""
        return [entry for entry in self.load() if entry.unix_time > since]

    def newest_first(self, limit: int | None = None) -> list[ClipboardEntry]:
        entries = sort_entries(self.load(), newest_first=True)
        return entries[:limit] if limit is not None else entries

    def merge_remote(
        self,
        remote: Iterable[ClipboardEntry],
        strategy: ConflictResolutionStrategy | None = None,
    ) -> MergeResult:
        """Merge entries from a peer into the log under the log lock.

        A corrupt log is never overwritten: ``CorruptStore`` propagates.
        """
        with self._lock:
            local = self._read()
            result = merge(
                local,
                remote,
                strategy=strategy,
                local_device_id=self.device_id,
                max_entries=self.max_entries,
            )
            if result.changed:
                self._write(result.entries)

        if result.added or result.replaced:
            logger.info(
                f"Merged {result.added} new and {result.replaced} replaced clipboard entries"
            )
        return result

    def recreate(self, backup: bool = True) -> Path | None:
        """Start a fresh empty log, moving the old file aside first.

        Returns the backup path, if one was made.
        """
        with self._lock:
            backup_path = None
            if self.path.exists():
                if backup:
                    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
                    backup_path = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
                    try:
                        os.replace(self.path, backup_path)
                    except OSError as e:
                        raise StoreError(f"Cannot back up {self.path}: {e}") from e
                    logger.warning(f"Moved unreadable history to {backup_path}")
            self._write([])
            return backup_path

    def _prepare(self, value: str | ClipboardEntry, existing: list[ClipboardEntry]) -> ClipboardEntry:
        if isinstance(value, ClipboardEntry):
            entry = value
            updates = {}
            if entry.device_id is None:
                updates["device_id"] = self.device_id
            if entry.entry_id is None:
                updates["entry_id"] = uuid.uuid4().hex
            if not entry.timestamp:
                updates["timestamp"] = self._capture_timestamp(existing)
            return entry.model_copy(update=updates) if updates else entry

        return ClipboardEntry.create(
            value,
            device_id=self.device_id,
            timestamp=self._capture_timestamp(existing),
        )

    def _capture_timestamp(self, existing: list[ClipboardEntry]) -> str:
        """Now, nudged forward if needed so local captures never go backwards."""
        timestamp = now_timestamp()
        last = max(
            (e.unix_time for e in existing if e.device_id == self.device_id),
            default=0.0,
        )
        if parse_timestamp(timestamp).timestamp() <= last:
            timestamp = timestamp_from_unix(last + 0.001)
        return timestamp

    def _read(self) -> list[ClipboardEntry]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StoreError(f"Cannot read {self.path}: {e}") from e

        if not raw.strip():
            return []

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptStore(self.path, str(e)) from e

        if not isinstance(data, list):
            raise CorruptStore(self.path, "top-level value is not a list")

        entries = []
        for index, record in enumerate(data):
            try:
                entries.append(migrate_record(record))
            except ProtocolError as e:
                logger.warning(f"Skipping unreadable history record #{index}: {e}")
        return entries

    def _write(self, entries: list[ClipboardEntry]) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as f:
                tmp_name = f.name
                json.dump(dump_entries(entries), f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StoreError(f"Cannot write {self.path}: {e}") from e
