"""Conflict resolution policies applied when two entries share a key."""

from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, model_validator

if TYPE_CHECKING:
    from clipmesh.history.models import ClipboardEntry


class StrategyKind(str, Enum):
    """Names of the available conflict policies."""
    KEEP_NEWEST = "keep_newest"
    KEEP_BOTH = "keep_both"
    PREFER_LOCAL_DEVICE = "prefer_local_device"
    PREFER_SPECIFIC_DEVICE = "prefer_specific_device"


class Resolution(Enum):
    """Outcome of a single conflict."""
    KEEP_LOCAL = "keep_local"
    TAKE_REMOTE = "take_remote"
    KEEP_BOTH = "keep_both"


# CLI spelling -> kind
_CLI_NAMES = {
    "keep-newest": StrategyKind.KEEP_NEWEST,
    "keep-both": StrategyKind.KEEP_BOTH,
    "prefer-local": StrategyKind.PREFER_LOCAL_DEVICE,
    "prefer-device": StrategyKind.PREFER_SPECIFIC_DEVICE,
}


# Older configs store "KeepNewest" or {"PreferSpecificDevice": "<id>"}
_LEGACY_NAMES = {
    "KeepNewest": StrategyKind.KEEP_NEWEST,
    "KeepBoth": StrategyKind.KEEP_BOTH,
    "PreferLocalDevice": StrategyKind.PREFER_LOCAL_DEVICE,
}


class ConflictResolutionStrategy(BaseModel):
    """The single conflict policy active on this device.

    Serialized as ``{"strategy": "keep_newest", "device_id": null}``;
    ``device_id`` is only meaningful for ``prefer_specific_device``.
    """
    strategy: StrategyKind = StrategyKind.KEEP_NEWEST
    device_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_shape(cls, data: Any) -> Any:
        if isinstance(data, str) and data in _LEGACY_NAMES:
            return {"strategy": _LEGACY_NAMES[data]}
        if isinstance(data, dict) and list(data) == ["PreferSpecificDevice"]:
            return {
                "strategy": StrategyKind.PREFER_SPECIFIC_DEVICE,
                "device_id": data["PreferSpecificDevice"],
            }
        return data

    @model_validator(mode="after")
    def _check_device(self) -> "ConflictResolutionStrategy":
        if self.strategy == StrategyKind.PREFER_SPECIFIC_DEVICE and not self.device_id:
            raise ValueError("prefer_specific_device requires a device_id")
        return self

    @classmethod
    def keep_newest(cls) -> "ConflictResolutionStrategy":
        return cls(strategy=StrategyKind.KEEP_NEWEST)

    @classmethod
    def keep_both(cls) -> "ConflictResolutionStrategy":
        return cls(strategy=StrategyKind.KEEP_BOTH)

    @classmethod
    def prefer_local_device(cls) -> "ConflictResolutionStrategy":
        return cls(strategy=StrategyKind.PREFER_LOCAL_DEVICE)

    @classmethod
    def prefer_specific_device(cls, device_id: str) -> "ConflictResolutionStrategy":
        return cls(strategy=StrategyKind.PREFER_SPECIFIC_DEVICE, device_id=device_id)

    @classmethod
    def parse(cls, text: str) -> "ConflictResolutionStrategy":
        """Parse CLI text: keep-newest, keep-both, prefer-local, prefer-device:<id>."""
        name, _, device_id = text.strip().partition(":")
        kind = _CLI_NAMES.get(name.lower())
        if kind is None:
            choices = ", ".join(_CLI_NAMES)
            raise ValueError(f"Unknown conflict strategy '{text}' (choose from {choices})")
        return cls(strategy=kind, device_id=device_id or None)

    def __str__(self) -> str:
        for name, kind in _CLI_NAMES.items():
            if kind == self.strategy:
                return f"{name}:{self.device_id}" if self.device_id else name
        return self.strategy.value


def resolve_conflict(
    strategy: ConflictResolutionStrategy,
    local: "ClipboardEntry",
    remote: "ClipboardEntry",
) -> Resolution:
    """Decide what happens when ``remote`` conflicts with ``local``.

    A conflict is two entries with the same dedup key but different content.
    """
    kind = strategy.strategy

    if kind == StrategyKind.KEEP_NEWEST:
        if remote.unix_time > local.unix_time:
            return Resolution.TAKE_REMOTE
        return Resolution.KEEP_LOCAL

    if kind == StrategyKind.KEEP_BOTH:
        return Resolution.KEEP_BOTH

    if kind == StrategyKind.PREFER_SPECIFIC_DEVICE:
        if remote.device_id is not None and remote.device_id == strategy.device_id:
            return Resolution.TAKE_REMOTE
        return Resolution.KEEP_LOCAL

    # PREFER_LOCAL_DEVICE
    return Resolution.KEEP_LOCAL
