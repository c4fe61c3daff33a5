"""Merge engine - combines the local log with entries from a peer.

Handles:
- Deduplication by entry id (exact content for legacy records, which also
  match any local entry with the same content)
- Dropping our own events echoed back by a peer
- Conflict resolution for same-key, different-content entries
- Ordering and the history size cap
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from clipmesh.history.conflict import (
    ConflictResolutionStrategy,
    Resolution,
    resolve_conflict,
)
from clipmesh.history.models import ClipboardEntry
from clipmesh.utils.hashing import hash_content
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)

# KeepBoth never keeps more than this many entries per key
MAX_VERSIONS_PER_KEY = 2


@dataclass
class MergeResult:
    """Result of merging a remote entry set into a local one."""

    entries: list[ClipboardEntry] = field(default_factory=list)
    added: int = 0
    replaced: int = 0
    duplicates: int = 0
    conflicts: int = 0
    self_skipped: int = 0
    dropped: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.replaced or self.dropped)

    def to_dict(self) -> dict:
        return {
            "total": len(self.entries),
            "added": self.added,
            "replaced": self.replaced,
            "duplicates": self.duplicates,
            "conflicts": self.conflicts,
            "self_skipped": self.self_skipped,
            "dropped": self.dropped,
        }


def sort_entries(entries: Iterable[ClipboardEntry], newest_first: bool = False) -> list[ClipboardEntry]:
    """Order entries by capture time, ties broken deterministically."""
    return sorted(entries, key=ClipboardEntry.sort_key, reverse=newest_first)


def merge(
    local: Iterable[ClipboardEntry],
    remote: Iterable[ClipboardEntry],
    strategy: ConflictResolutionStrategy | None = None,
    local_device_id: str | None = None,
    max_entries: int | None = None,
) -> MergeResult:
    """Merge ``remote`` into ``local``.

    Deterministic and idempotent: merging the same remote set twice gives
    the same entries as merging it once.
    """
    if strategy is None:
        strategy = ConflictResolutionStrategy.keep_newest()

    result = MergeResult()
    merged: list[ClipboardEntry] = list(local)
    by_key: dict[tuple[str, str], list[int]] = {}
    contents = Counter(hash_content(entry.content) for entry in merged)
    for index, entry in enumerate(merged):
        by_key.setdefault(entry.dedup_key, []).append(index)

    for entry in remote:
        if local_device_id is not None and entry.device_id == local_device_id:
            result.self_skipped += 1
            continue

        # Records without an id carry nothing but their content
        if entry.entry_id is None and contents[hash_content(entry.content)]:
            result.duplicates += 1
            continue

        key = entry.dedup_key
        slots = by_key.get(key)
        if not slots:
            by_key[key] = [len(merged)]
            merged.append(entry)
            contents[hash_content(entry.content)] += 1
            result.added += 1
            continue

        if any(merged[i] == entry or merged[i].content == entry.content for i in slots):
            result.duplicates += 1
            continue

        result.conflicts += 1
        # Resolve against the first (original) entry for the key
        current = merged[slots[0]]
        resolution = resolve_conflict(strategy, current, entry)

        if resolution == Resolution.TAKE_REMOTE:
            merged[slots[0]] = entry
            contents[hash_content(current.content)] -= 1
            contents[hash_content(entry.content)] += 1
            result.replaced += 1
        elif resolution == Resolution.KEEP_BOTH and len(slots) < MAX_VERSIONS_PER_KEY:
            slots.append(len(merged))
            merged.append(entry)
            contents[hash_content(entry.content)] += 1
            result.added += 1

    ordered = sort_entries(merged)
    if max_entries is not None and len(ordered) > max_entries:
        result.dropped = len(ordered) - max_entries
        ordered = ordered[-max_entries:] if max_entries > 0 else []

    result.entries = ordered

    if result.conflicts:
        logger.debug(
            f"Resolved {result.conflicts} conflicts with {strategy} "
            f"({result.replaced} replaced)"
        )

    return result
