"""Stable per-device identity."""

import uuid
from pathlib import Path

from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)


def get_device_id(path: Path | None = None) -> str:
    """Return this device's id, generating and persisting one on first use."""
    if path is None:
        from clipmesh.config import get_device_id_path
        path = get_device_id_path()

    try:
        device_id = path.read_text(encoding="utf-8").strip()
        if device_id:
            return device_id
    except FileNotFoundError:
        pass
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Unreadable device id file {path}: {e}")

    device_id = str(uuid.uuid4())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(device_id, encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not persist device id to {path}: {e}")

    return device_id
