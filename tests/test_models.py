"""Tests for clipboard entry records."""

import pytest

from clipmesh.errors import ProtocolError
from clipmesh.history.models import (
    LEGACY_VERSION,
    RECORD_VERSION,
    ClipboardEntry,
    migrate_record,
    parse_entries,
    parse_timestamp,
    timestamp_from_unix,
)


def test_create_fills_ids():
    """Test that new entries get an id and a timestamp."""
    entry = ClipboardEntry.create("hello", device_id="dev-a")

    assert entry.entry_id
    assert entry.device_id == "dev-a"
    assert entry.version == RECORD_VERSION
    assert entry.captured_at is not None


def test_unix_time_roundtrip():
    """Test converting unix seconds to a timestamp and back."""
    entry = ClipboardEntry(content="x", timestamp=timestamp_from_unix(200.5))
    assert entry.unix_time == pytest.approx(200.5)


def test_unparseable_timestamp_sorts_first():
    """Test that a bad timestamp reads as time zero."""
    entry = ClipboardEntry(content="x", timestamp="yesterday-ish")
    assert entry.captured_at is None
    assert entry.unix_time == 0.0


def test_parse_timestamp_variants():
    """Test Z suffix, offsets and naive values."""
    assert parse_timestamp("2024-01-01T00:00:00Z").timestamp() == 1704067200
    assert parse_timestamp("2024-01-01T01:00:00+01:00").timestamp() == 1704067200
    # Naive values are taken as UTC
    assert parse_timestamp("2024-01-01T00:00:00").timestamp() == 1704067200
    assert parse_timestamp("not a date") is None


def test_dedup_key_prefers_entry_id():
    """Test that identified entries dedup by id, legacy ones by content."""
    a = ClipboardEntry(content="same", timestamp="2024-01-01T00:00:00Z", entry_id="1")
    b = ClipboardEntry(content="same", timestamp="2024-01-01T00:00:00Z", entry_id="2")
    legacy_a = ClipboardEntry(content="same", timestamp="2024-01-01T00:00:00Z")
    legacy_b = ClipboardEntry(content="same", timestamp="2024-06-01T00:00:00Z")

    assert a.dedup_key != b.dedup_key
    assert legacy_a.dedup_key == legacy_b.dedup_key


def test_migrate_legacy_record():
    """Test that records without ids are read as version 1."""
    entry = migrate_record({"content": "old", "timestamp": "2023-05-01T10:00:00Z"})

    assert entry.version == LEGACY_VERSION
    assert entry.entry_id is None
    assert entry.device_id is None
    assert entry.to_record()["version"] == LEGACY_VERSION


def test_migrate_current_record_without_version_tag():
    """Test that a record with ids but no tag is taken as current."""
    entry = migrate_record({
        "content": "new",
        "timestamp": "2024-05-01T10:00:00Z",
        "device_id": "dev-a",
        "entry_id": "abc",
    })
    assert entry.version == RECORD_VERSION
    assert entry.entry_id == "abc"


@pytest.mark.parametrize("raw", [
    "just a string",
    {"content": "x", "timestamp": "2024-01-01T00:00:00Z", "version": 99},
    {"timestamp": "2024-01-01T00:00:00Z"},
    {"content": 5, "timestamp": "2024-01-01T00:00:00Z", "entry_id": "1"},
])
def test_migrate_rejects_bad_records(raw):
    """Test that unusable records raise ProtocolError."""
    with pytest.raises(ProtocolError):
        migrate_record(raw)


def test_parse_entries_requires_list():
    """Test that a non-list payload is rejected."""
    with pytest.raises(ProtocolError):
        parse_entries({"content": "x"})
