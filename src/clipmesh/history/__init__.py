"""clipmesh clipboard history: entry log, merge engine, conflict policies.

The calls below are what the clipboard poller and the history viewer use.
"""

from clipmesh.history.conflict import ConflictResolutionStrategy, StrategyKind
from clipmesh.history.merge import MergeResult, merge
from clipmesh.history.models import ClipboardEntry
from clipmesh.history.store import EntryLog

__all__ = [
    "ClipboardEntry",
    "ConflictResolutionStrategy",
    "EntryLog",
    "MergeResult",
    "StrategyKind",
    "append_entry",
    "load_history",
    "merge",
    "save_history",
]


def append_entry(content: str) -> ClipboardEntry:
    """Append a captured clipboard value to the local log.

    A running daemon takes the entry itself so broadcast mode can send it
    on; otherwise it goes straight into the file.
    """
    from clipmesh.daemon import append_via_daemon

    entry = append_via_daemon(content)
    if entry is None:
        entry = EntryLog().append(content)
    return entry


def load_history() -> list[ClipboardEntry]:
    """Read the full local log, oldest first."""
    return EntryLog().load()


def save_history(entries: list[ClipboardEntry]) -> None:
    """Replace the full local log."""
    EntryLog().write(entries)
