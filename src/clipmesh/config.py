"""clipmesh configuration management."""

import json
import os
import socket
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from clipmesh.errors import ConfigError
from clipmesh.history.conflict import ConflictResolutionStrategy
from clipmesh.utils.hashing import random_suffix
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)

# Default paths
DEFAULT_CONFIG_DIR = Path(os.environ.get("CLIPMESH_HOME") or Path.home() / ".clipmesh")
CONFIG_FILENAME = "sync_config.json"
HISTORY_FILENAME = "clipboard_history.json"
PID_FILENAME = "clipmesh-sync.pid"
DEVICE_ID_FILENAME = "device_id"
KNOWN_PEERS_FILENAME = "known_peers.txt"

DEFAULT_LISTEN_PORT = 8080
DEFAULT_REMOTE_PORT = 8080
DEFAULT_P2P_PORT = 7643
SSH_TUNNEL_BASE_PORT = 8081


def _current_user() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "user"


def _default_peer_id() -> str:
    return f"{_current_user()}@{socket.gethostname()}-{random_suffix()}"


class SshTunnelConfig(BaseModel):
    """SSH local-port-forward used to reach a firewalled peer."""
    model_config = ConfigDict(validate_assignment=True)

    local_port: int = Field(ge=1, le=65535)
    remote_port: int = Field(default=DEFAULT_REMOTE_PORT, ge=1, le=65535)
    ssh_user: str
    ssh_host: str
    ssh_port: int = Field(default=22, ge=1, le=65535)
    identity_file: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_names(cls, data: Any) -> Any:
        # Older configs call the local port "tunnel_local_port" and allow ssh_port=null
        if isinstance(data, dict):
            data = dict(data)
            if "tunnel_local_port" in data and "local_port" not in data:
                data["local_port"] = data.pop("tunnel_local_port")
            if data.get("ssh_port") is None:
                data.pop("ssh_port", None)
        return data

    @property
    def target(self) -> str:
        return f"{self.ssh_user}@{self.ssh_host}"


class PeerConfig(BaseModel):
    """A configured sync peer."""
    model_config = ConfigDict(validate_assignment=True)

    endpoint: str  # "http://192.168.1.100:8080" or "ssh://user@host:port"
    enabled: bool = True
    ssh_tunnel: SshTunnelConfig | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_ssh_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and "ssh_config" in data and "ssh_tunnel" not in data:
            data = dict(data)
            data["ssh_tunnel"] = data.pop("ssh_config")
        return data

    @property
    def connection_type(self) -> str:
        return "SSH" if self.ssh_tunnel else "HTTP"


class P2PConfig(BaseModel):
    """Configuration for the direct-socket broadcast mode."""
    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = Field(default=DEFAULT_P2P_PORT, ge=0, le=65535)
    connect_timeout: float = 2.0
    read_timeout: float = 5.0
    queue_size: int = Field(default=64, ge=1)


class SyncConfig(BaseModel):
    """Main clipmesh sync configuration."""
    model_config = ConfigDict(validate_assignment=True)

    version: str = "1.0"
    enabled: bool = False
    peer_id: str = Field(default_factory=_default_peer_id)
    listen_host: str = "0.0.0.0"
    listen_port: int = Field(default=DEFAULT_LISTEN_PORT, ge=1, le=65535)
    sync_interval_seconds: int = Field(default=30, ge=1)
    auto_sync: bool = True
    request_timeout: float = 10.0
    transfer_timeout: float = 30.0
    max_entries: int | None = 100
    conflict_resolution: ConflictResolutionStrategy = Field(
        default_factory=ConflictResolutionStrategy
    )
    p2p: P2PConfig = Field(default_factory=P2PConfig)
    peers: dict[str, PeerConfig] = Field(default_factory=dict)

    def enabled_peers(self) -> dict[str, PeerConfig]:
        return {peer_id: peer for peer_id, peer in self.peers.items() if peer.enabled}

    def add_peer(
        self,
        peer_id: str,
        endpoint: str,
        remote_port: int = DEFAULT_REMOTE_PORT,
        identity_file: str | None = None,
    ) -> PeerConfig:
        """Add (or replace) a peer.

        ``ssh://user@host:port`` endpoints get an SSH tunnel with an
        auto-allocated local port; anything else must be an http(s) URL.
        """
        ssh_tunnel = None
        if endpoint.startswith("ssh://"):
            user, host, port = parse_ssh_endpoint(endpoint)
            # A replaced peer gives its old local port back
            self.peers.pop(peer_id, None)
            ssh_tunnel = SshTunnelConfig(
                local_port=self.find_available_port(),
                remote_port=remote_port,
                ssh_user=user,
                ssh_host=host,
                ssh_port=port,
                identity_file=identity_file,
            )
        else:
            validate_http_endpoint(endpoint)

        peer = PeerConfig(endpoint=endpoint, enabled=True, ssh_tunnel=ssh_tunnel)
        self.peers[peer_id] = peer
        return peer

    def remove_peer(self, peer_id: str) -> bool:
        return self.peers.pop(peer_id, None) is not None

    def set_peer_enabled(self, peer_id: str, enabled: bool) -> bool:
        peer = self.peers.get(peer_id)
        if peer is None:
            return False
        peer.enabled = enabled
        return True

    def find_available_port(self) -> int:
        """First local tunnel port at or above the base not used by any peer."""
        used = {
            peer.ssh_tunnel.local_port
            for peer in self.peers.values()
            if peer.ssh_tunnel is not None
        }
        port = SSH_TUNNEL_BASE_PORT
        while port in used:
            port += 1
        return port


def parse_ssh_endpoint(endpoint: str) -> tuple[str, str, int]:
    """Split ``ssh://user@host:port`` into (user, host, port).

    The user defaults to the current login and the port to 22.
    """
    parts = urlsplit(endpoint)
    if parts.scheme != "ssh" or not parts.hostname:
        raise ConfigError(f"Invalid SSH endpoint: {endpoint}")
    try:
        port = parts.port or 22
    except ValueError:
        port = 22
    return parts.username or _current_user(), parts.hostname, port


def validate_http_endpoint(endpoint: str) -> str:
    """Check that ``endpoint`` is an http(s) URL httpx can use as a base URL."""
    try:
        url = httpx.URL(endpoint)
    except httpx.InvalidURL as e:
        raise ConfigError(f"Invalid peer endpoint {endpoint}: {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigError(f"Unsupported peer endpoint: {endpoint}")
    return endpoint


def get_config_dir() -> Path:
    """Get the clipmesh state directory."""
    return DEFAULT_CONFIG_DIR


def get_config_path() -> Path:
    """Get the config file path."""
    return get_config_dir() / CONFIG_FILENAME


def get_history_path() -> Path:
    return get_config_dir() / HISTORY_FILENAME


def get_pid_path() -> Path:
    return get_config_dir() / PID_FILENAME


def get_device_id_path() -> Path:
    return get_config_dir() / DEVICE_ID_FILENAME


def get_known_peers_path() -> Path:
    return get_config_dir() / "p2p" / KNOWN_PEERS_FILENAME


def daemon_url(config: SyncConfig, endpoint: str) -> str:
    """URL of an endpoint on the local daemon."""
    host = config.listen_host if config.listen_host not in ("0.0.0.0", "::") else "127.0.0.1"
    return f"http://{host}:{config.listen_port}{endpoint}"


def ensure_config_dir() -> Path:
    """Ensure ~/.clipmesh exists and return path."""
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "logs").mkdir(exist_ok=True)
    (config_dir / "p2p").mkdir(exist_ok=True)
    return config_dir


def migrate_legacy_config(content: str) -> SyncConfig:
    """Salvage what we can from a config file that no longer validates."""
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("config root is not an object")

    config = SyncConfig()

    if isinstance(data.get("enabled"), bool):
        config.enabled = data["enabled"]
    if isinstance(data.get("peer_id"), str) and data["peer_id"]:
        config.peer_id = data["peer_id"]
    if isinstance(data.get("listen_port"), int) and 1 <= data["listen_port"] <= 65535:
        config.listen_port = data["listen_port"]
    if isinstance(data.get("sync_interval_seconds"), int) and data["sync_interval_seconds"] > 0:
        config.sync_interval_seconds = data["sync_interval_seconds"]
    if isinstance(data.get("auto_sync"), bool):
        config.auto_sync = data["auto_sync"]

    peers = data.get("peers")
    if isinstance(peers, dict):
        for peer_id, peer_data in peers.items():
            try:
                config.peers[peer_id] = PeerConfig.model_validate(peer_data)
            except ValidationError:
                logger.warning(f"Dropping unreadable peer entry: {peer_id}")

    return config


def load_config(config_path: Path | None = None) -> SyncConfig:
    """Load configuration from file, creating defaults on first use."""
    if config_path is None:
        config_path = get_config_path()

    if not config_path.exists():
        config = SyncConfig()
        save_config(config, config_path)
        return config

    try:
        content = config_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    try:
        return SyncConfig.model_validate_json(content)
    except ValidationError:
        pass

    try:
        config = migrate_legacy_config(content)
        logger.info("Migrated sync configuration to the current format")
    except ValueError as e:
        logger.warning(f"Could not migrate sync config ({e}), creating a new one")
        config = SyncConfig()

    save_config(config, config_path)
    return config


def save_config(config: SyncConfig, config_path: Path | None = None) -> None:
    """Save configuration to file."""
    if config_path is None:
        config_path = get_config_path()

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot write {config_path}: {e}") from e


def get_nested_value(config: SyncConfig, key: str) -> Any:
    """Get a nested config value using dotted key notation.

    Examples:
        get_nested_value(config, "listen_port")          -> 8080
        get_nested_value(config, "p2p.port")             -> 7643
        get_nested_value(config, "peers.laptop.enabled") -> True
    """
    obj: Any = config

    for part in key.split("."):
        if isinstance(obj, dict):
            obj = obj.get(part)
        elif isinstance(obj, BaseModel) and part in type(obj).model_fields:
            obj = getattr(obj, part)
        else:
            return None

        if obj is None:
            return None

    return obj


def set_nested_value(config: SyncConfig, key: str, value: str) -> None:
    """Set a nested config value using dotted key notation.

    Values are coerced to the type of the value they replace.
    """
    parts = key.split(".")
    obj: Any = config

    for part in parts[:-1]:
        if isinstance(obj, dict) and part in obj:
            obj = obj[part]
        elif isinstance(obj, BaseModel) and part in type(obj).model_fields:
            obj = getattr(obj, part)
        else:
            raise KeyError(f"Invalid config key: {key}")

    final_key = parts[-1]
    if not isinstance(obj, BaseModel) or final_key not in type(obj).model_fields:
        raise KeyError(f"Invalid config key: {key}")

    current = getattr(obj, final_key)
    coerced: Any = value
    if isinstance(current, bool):
        coerced = value.lower() in ("true", "1", "yes", "on")
    elif isinstance(current, int):
        coerced = int(value)
    elif isinstance(current, float):
        coerced = float(value)
    elif isinstance(current, BaseModel) or isinstance(current, dict):
        raise KeyError(f"Cannot set a section directly: {key}")
    elif current is None:
        if value.lower() in ("none", "null", ""):
            coerced = None
        elif value.isdigit():
            coerced = int(value)

    setattr(obj, final_key, coerced)
