"""Broadcast mode: direct TCP fan-out of new entries to known peers."""

from clipmesh.p2p.node import P2PNode
from clipmesh.p2p.registry import PeerRegistry

__all__ = ["P2PNode", "PeerRegistry"]
