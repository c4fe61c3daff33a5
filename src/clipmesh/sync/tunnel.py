"""SSH tunnels for peers that are only reachable through SSH.

A tunnel is an ``ssh -N -L local:localhost:remote`` subprocess. Tunnels are
started lazily before first use and live as long as the daemon; a local port
that is already bound is assumed to be a tunnel from an earlier run and is
reused as-is.
"""

import asyncio
import socket
import subprocess
from collections.abc import Callable

from clipmesh.config import SshTunnelConfig
from clipmesh.errors import TransportError
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)


def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """True when nothing can bind ``host:port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


class SshTunnelManager:
    """Starts and tracks SSH local-port-forward subprocesses."""

    def __init__(
        self,
        settle_delay: float = 1.0,
        ssh_binary: str = "ssh",
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.settle_delay = settle_delay
        self.ssh_binary = ssh_binary
        self._popen = popen
        self._processes: dict[int, subprocess.Popen] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    @property
    def active_ports(self) -> list[int]:
        return sorted(port for port, proc in self._processes.items() if proc.poll() is None)

    def build_command(self, tunnel: SshTunnelConfig) -> list[str]:
        command = [
            self.ssh_binary,
            "-N",
            "-L",
            f"{tunnel.local_port}:localhost:{tunnel.remote_port}",
            "-p",
            str(tunnel.ssh_port),
            "-o",
            "ExitOnForwardFailure=yes",
        ]
        if tunnel.identity_file:
            command += ["-i", tunnel.identity_file]
        command.append(tunnel.target)
        return command

    async def ensure_tunnel(self, tunnel: SshTunnelConfig) -> str:
        """Make sure a tunnel is listening on ``tunnel.local_port``.

        Returns:
            Base URL of the tunneled peer service.

        Raises:
            TransportError: ssh could not be started or exited immediately.
        """
        port = tunnel.local_port
        url = f"http://localhost:{port}"
        lock = self._locks.setdefault(port, asyncio.Lock())

        async with lock:
            if is_port_in_use(port):
                logger.debug(f"Reusing SSH tunnel on port {port}")
                return url

            running = self._processes.get(port)
            if running is not None and running.poll() is None:
                # Started by us and still connecting
                return url

            command = self.build_command(tunnel)
            try:
                proc = self._popen(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                )
            except OSError as e:
                raise TransportError(f"Cannot start ssh for {tunnel.target}: {e}") from e

            await asyncio.sleep(self.settle_delay)

            if proc.poll() is not None:
                detail = ""
                if proc.stderr is not None:
                    detail = proc.stderr.read().decode("utf-8", errors="replace").strip()
                raise TransportError(
                    f"SSH tunnel to {tunnel.target} exited with code {proc.returncode}"
                    + (f": {detail}" if detail else ""),
                    peer=tunnel.target,
                )

            self._processes[port] = proc
            logger.info(f"SSH tunnel established on port {port} -> {tunnel.target}:{tunnel.remote_port}")
            return url

    def close_all(self) -> None:
        """Terminate every tunnel this manager started."""
        for port, proc in list(self._processes.items()):
            if proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
            logger.debug(f"Closed SSH tunnel on port {port}")
        self._processes.clear()
