"""Sync envelope exchanged over ``POST /sync``.

Wire shape::

    {"message_type": "ClipboardSync",
     "peer_id": "alice@laptop-x1y2",
     "timestamp": 1718000000.0,
     "data": {"ClipboardEntries": [...]}}

``data`` is ``{"ClipboardEntries": [...]}``, ``{"Timestamp": <unix>}`` or null.
"""

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError

from clipmesh.errors import ProtocolError
from clipmesh.history.models import ClipboardEntry, dump_entries, parse_entries

ENTRIES_KEY = "ClipboardEntries"
TIMESTAMP_KEY = "Timestamp"


class SyncMessageType(str, Enum):
    """Kinds of sync envelope."""
    HANDSHAKE = "Handshake"
    CLIPBOARD_SYNC = "ClipboardSync"
    HISTORY_REQUEST = "HistoryRequest"
    HISTORY_RESPONSE = "HistoryResponse"


class SyncMessage(BaseModel):
    """One request or reply on the sync endpoint."""
    message_type: SyncMessageType
    peer_id: str
    timestamp: float
    data: dict[str, Any] | None = None

    @property
    def entries(self) -> list[ClipboardEntry] | None:
        """Entries carried in ``data``, or None when there are none."""
        if not self.data or ENTRIES_KEY not in self.data:
            return None
        return parse_entries(self.data[ENTRIES_KEY])

    @property
    def since(self) -> float | None:
        if not self.data or TIMESTAMP_KEY not in self.data:
            return None
        value = self.data[TIMESTAMP_KEY]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ProtocolError(f"Invalid Timestamp payload: {value!r}")
        return float(value)


def create_sync_message(
    message_type: SyncMessageType,
    peer_id: str,
    entries: list[ClipboardEntry] | None = None,
    since: float | None = None,
) -> SyncMessage:
    """Build an envelope stamped with the current time."""
    data = None
    if entries is not None:
        data = {ENTRIES_KEY: dump_entries(entries)}
    elif since is not None:
        data = {TIMESTAMP_KEY: since}
    return SyncMessage(
        message_type=message_type,
        peer_id=peer_id,
        timestamp=time.time(),
        data=data,
    )


def parse_sync_message(raw: Any) -> SyncMessage:
    """Validate a decoded JSON envelope.

    Raises:
        ProtocolError: The payload is not a well-formed envelope.
    """
    try:
        return SyncMessage.model_validate(raw)
    except ValidationError as e:
        raise ProtocolError(f"Malformed sync message: {e.errors()[0]['msg']}") from e
