"""Clipboard entry record and its versioned on-disk/wire format.

Two record shapes exist in the wild:

* version 1 (legacy): ``{"content": ..., "timestamp": ...}`` with no ids.
* version 2 (current): adds ``device_id``, ``entry_id`` and a ``version`` tag.

Every record read from disk or from a peer goes through ``migrate_record``,
which tags it with an explicit version before validation. Records are always
written with their ``version`` field so the next reader does not have to guess.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from clipmesh.errors import ProtocolError
from clipmesh.utils.hashing import hash_content

LEGACY_VERSION = 1
RECORD_VERSION = 2


def now_timestamp() -> str:
    """Current local time as an ISO-8601 string with offset."""
    return datetime.now().astimezone().isoformat()


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_from_unix(seconds: float) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


class ClipboardEntry(BaseModel):
    """One captured clipboard value."""
    model_config = ConfigDict(frozen=True)

    content: str
    timestamp: str
    device_id: str | None = None
    entry_id: str | None = None
    version: int = RECORD_VERSION

    @classmethod
    def create(
        cls,
        content: str,
        device_id: str,
        timestamp: str | None = None,
        entry_id: str | None = None,
    ) -> "ClipboardEntry":
        return cls(
            content=content,
            timestamp=timestamp or now_timestamp(),
            device_id=device_id,
            entry_id=entry_id or uuid.uuid4().hex,
        )

    @property
    def captured_at(self) -> datetime | None:
        return parse_timestamp(self.timestamp)

    @property
    def unix_time(self) -> float:
        """Seconds since the epoch; 0.0 when the timestamp is unparseable."""
        captured = self.captured_at
        return captured.timestamp() if captured else 0.0

    @property
    def dedup_key(self) -> tuple[str, str]:
        """Identity used for dedup: the entry id, else the exact content."""
        if self.entry_id:
            return ("id", self.entry_id)
        return ("content", hash_content(self.content))

    def sort_key(self) -> tuple[float, str, str]:
        return (self.unix_time, self.entry_id or "", self.content)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()


def migrate_record(raw: Any) -> ClipboardEntry:
    """Tag a raw record with its format version and validate it.

    Raises:
        ProtocolError: The record is not an object, has an unknown version,
            or is missing required fields.
    """
    if not isinstance(raw, dict):
        raise ProtocolError(f"Clipboard record must be an object, got {type(raw).__name__}")

    version = raw.get("version")
    if version is None:
        has_ids = raw.get("entry_id") is not None or raw.get("device_id") is not None
        version = RECORD_VERSION if has_ids else LEGACY_VERSION

    if not isinstance(version, int) or not LEGACY_VERSION <= version <= RECORD_VERSION:
        raise ProtocolError(f"Unsupported clipboard record version: {version!r}")

    if version == LEGACY_VERSION:
        data = {
            "content": raw.get("content"),
            "timestamp": raw.get("timestamp"),
            "version": LEGACY_VERSION,
        }
    else:
        data = {
            "content": raw.get("content"),
            "timestamp": raw.get("timestamp"),
            "device_id": raw.get("device_id"),
            "entry_id": raw.get("entry_id"),
            "version": RECORD_VERSION,
        }

    try:
        return ClipboardEntry.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid clipboard record: {e.errors()[0]['msg']}") from e


def parse_entries(raw: Any) -> list[ClipboardEntry]:
    """Strictly parse a list of wire records."""
    if not isinstance(raw, list):
        raise ProtocolError("Expected a list of clipboard entries")
    return [migrate_record(item) for item in raw]


def dump_entries(entries: list[ClipboardEntry]) -> list[dict[str, Any]]:
    return [entry.to_record() for entry in entries]
