"""Pytest configuration and fixtures."""

import tempfile
from pathlib import Path

import pytest

from clipmesh.history.models import ClipboardEntry, timestamp_from_unix
from clipmesh.history.store import EntryLog


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clipmesh_home(temp_dir, monkeypatch):
    """Point every default clipmesh path at a temporary directory."""
    monkeypatch.setattr("clipmesh.config.DEFAULT_CONFIG_DIR", temp_dir)
    return temp_dir


@pytest.fixture
def make_entry():
    """Build an entry captured at a given unix time."""
    def _make(
        content: str,
        at: float = 100.0,
        entry_id: str | None = None,
        device_id: str | None = "dev-remote",
    ) -> ClipboardEntry:
        return ClipboardEntry(
            content=content,
            timestamp=timestamp_from_unix(at),
            device_id=device_id,
            entry_id=entry_id,
        )
    return _make


@pytest.fixture
def local_log(temp_dir):
    """An empty entry log owned by device ``dev-local``."""
    return EntryLog(temp_dir / "local_history.json", device_id="dev-local")


@pytest.fixture
def remote_log(temp_dir):
    """An empty entry log owned by device ``dev-remote``."""
    return EntryLog(temp_dir / "remote_history.json", device_id="dev-remote")
