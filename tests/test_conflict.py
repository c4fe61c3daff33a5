"""Tests for conflict resolution policies."""

import pytest

from clipmesh.history.conflict import (
    ConflictResolutionStrategy,
    Resolution,
    StrategyKind,
    resolve_conflict,
)


def test_default_strategy_is_keep_newest():
    assert ConflictResolutionStrategy().strategy == StrategyKind.KEEP_NEWEST


def test_keep_newest(make_entry):
    """Test that the later timestamp wins."""
    strategy = ConflictResolutionStrategy.keep_newest()
    old = make_entry("old", at=100, entry_id="1")
    new = make_entry("new", at=200, entry_id="1")

    assert resolve_conflict(strategy, old, new) == Resolution.TAKE_REMOTE
    assert resolve_conflict(strategy, new, old) == Resolution.KEEP_LOCAL


def test_keep_newest_tie_keeps_local(make_entry):
    strategy = ConflictResolutionStrategy.keep_newest()
    a = make_entry("a", at=100, entry_id="1")
    b = make_entry("b", at=100, entry_id="1")
    assert resolve_conflict(strategy, a, b) == Resolution.KEEP_LOCAL


def test_keep_both(make_entry):
    strategy = ConflictResolutionStrategy.keep_both()
    a = make_entry("a", entry_id="1")
    b = make_entry("b", entry_id="1")
    assert resolve_conflict(strategy, a, b) == Resolution.KEEP_BOTH


def test_prefer_local_device(make_entry):
    strategy = ConflictResolutionStrategy.prefer_local_device()
    local = make_entry("mine", at=100, entry_id="1", device_id="dev-local")
    remote = make_entry("theirs", at=900, entry_id="1")
    assert resolve_conflict(strategy, local, remote) == Resolution.KEEP_LOCAL


def test_prefer_specific_device(make_entry):
    """Test that only the named device's entries win."""
    strategy = ConflictResolutionStrategy.prefer_specific_device("desk")
    local = make_entry("mine", entry_id="1", device_id="dev-local")
    from_desk = make_entry("desk", entry_id="1", device_id="desk")
    from_other = make_entry("other", entry_id="1", device_id="laptop")

    assert resolve_conflict(strategy, local, from_desk) == Resolution.TAKE_REMOTE
    assert resolve_conflict(strategy, local, from_other) == Resolution.KEEP_LOCAL


def test_specific_device_requires_id():
    with pytest.raises(ValueError):
        ConflictResolutionStrategy(strategy=StrategyKind.PREFER_SPECIFIC_DEVICE)


@pytest.mark.parametrize("text,kind,device", [
    ("keep-newest", StrategyKind.KEEP_NEWEST, None),
    ("keep-both", StrategyKind.KEEP_BOTH, None),
    ("prefer-local", StrategyKind.PREFER_LOCAL_DEVICE, None),
    ("prefer-device:desk-01", StrategyKind.PREFER_SPECIFIC_DEVICE, "desk-01"),
])
def test_parse_cli_names(text, kind, device):
    """Test parsing CLI strategy names and printing them back."""
    strategy = ConflictResolutionStrategy.parse(text)
    assert strategy.strategy == kind
    assert strategy.device_id == device
    assert str(strategy) == text


def test_parse_unknown_strategy():
    with pytest.raises(ValueError, match="Unknown conflict strategy"):
        ConflictResolutionStrategy.parse("coin-flip")


def test_strategy_serialization():
    """Test the persisted shape of a strategy."""
    strategy = ConflictResolutionStrategy.prefer_specific_device("desk")
    assert strategy.model_dump(mode="json") == {
        "strategy": "prefer_specific_device",
        "device_id": "desk",
    }
