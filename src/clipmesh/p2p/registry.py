"""Known broadcast peers, persisted one ``host:port`` per line."""

import threading
from pathlib import Path

from clipmesh.config import DEFAULT_P2P_PORT
from clipmesh.errors import ConfigError
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)


def normalize_address(address: str, default_port: int = DEFAULT_P2P_PORT) -> str:
    """``host`` or ``host:port`` -> ``host:port``. IPv6 hosts need brackets."""
    address = address.strip()
    if not address:
        raise ConfigError("Empty peer address")

    host, port = split_address(address, default_port)
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def split_address(address: str, default_port: int = DEFAULT_P2P_PORT) -> tuple[str, int]:
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port_text = rest.lstrip(":")
    elif address.count(":") == 1:
        host, _, port_text = address.partition(":")
    else:
        host, port_text = address, ""

    if not host:
        raise ConfigError(f"Invalid peer address: {address}")
    if not port_text:
        return host, default_port
    try:
        port = int(port_text)
    except ValueError as e:
        raise ConfigError(f"Invalid port in peer address: {address}") from e
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid port in peer address: {address}")
    return host, port


class PeerRegistry:
    """Thread-safe set of peer addresses with insertion order kept.

    Owned by whoever creates it (normally the daemon) and passed to the
    components that need it.
    """

    def __init__(self, path: Path | None = None) -> None:
        if path is None:
            from clipmesh.config import get_known_peers_path
            path = get_known_peers_path()
        self.path = path
        self._lock = threading.Lock()
        self._peers: list[str] = self._load()

    def _load(self) -> list[str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read known peers from {self.path}: {e}")
            return []

        peers: list[str] = []
        for line in text.splitlines():
            line = line.strip()
            if line and line not in peers:
                peers.append(line)
        return peers

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            content = "\n".join(self._peers)
            self.path.write_text(content + "\n" if content else "", encoding="utf-8")
        except OSError as e:
            logger.warning(f"Cannot save known peers to {self.path}: {e}")

    def add(self, address: str) -> bool:
        """Record an address. Returns False if it was already known."""
        with self._lock:
            if address in self._peers:
                return False
            self._peers.append(address)
            self._save()
        logger.info(f"Added broadcast peer {address}")
        return True

    def remove(self, address: str) -> bool:
        with self._lock:
            if address not in self._peers:
                return False
            self._peers.remove(address)
            self._save()
        return True

    def addresses(self) -> list[str]:
        with self._lock:
            return list(self._peers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._peers
