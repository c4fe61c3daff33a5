"""Peer-to-peer history sync over HTTP, optionally through SSH tunnels."""

from clipmesh.sync.engine import PeerSyncResult, SyncEngine, SyncReport
from clipmesh.sync.protocol import SyncMessage, SyncMessageType

__all__ = [
    "PeerSyncResult",
    "SyncEngine",
    "SyncMessage",
    "SyncMessageType",
    "SyncReport",
]
