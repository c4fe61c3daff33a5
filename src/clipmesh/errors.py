"""Error types raised by clipmesh.

Per-peer failures (TransportError, ProtocolError) are caught by the sync
engine and reported; StoreError reaches whoever touched the store.
"""


class ClipmeshError(Exception):
    """Base class for all clipmesh errors."""


class ConfigError(ClipmeshError):
    """Sync configuration could not be loaded, parsed, or saved."""


class TransportError(ClipmeshError):
    """A peer could not be reached or answered with a non-success status."""

    def __init__(self, message: str, peer: str | None = None) -> None:
        super().__init__(message)
        self.peer = peer


class ProtocolError(ClipmeshError):
    """A peer sent a malformed envelope or an unexpected message type."""


class StoreError(ClipmeshError):
    """The entry log could not be read or written."""


class CorruptStore(StoreError):
    """The entry log exists and has content, but it cannot be decoded."""

    def __init__(self, path, reason: str) -> None:
        super().__init__(f"Corrupt clipboard history at {path}: {reason}")
        self.path = path
        self.reason = reason
