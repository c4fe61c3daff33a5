"""clipmesh CLI entry point."""

import asyncio
import json
import sys
from datetime import datetime

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from clipmesh import __version__
from clipmesh.config import (
    daemon_url,
    get_config_path,
    get_nested_value,
    load_config,
    save_config,
    set_nested_value,
)
from clipmesh.errors import ClipmeshError

console = Console()


def print_success(message: str) -> None:
    """Print success message."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str, detail: str | None = None) -> None:
    """Print error message."""
    console.print(f"[red]✗[/red] {message}")
    if detail:
        console.print(f"  [dim]{detail}[/dim]")


def print_warning(message: str) -> None:
    """Print warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def print_info(message: str) -> None:
    """Print info message."""
    console.print(f"[blue]ℹ[/blue] {message}")


def fail(message: str, detail: str | None = None) -> None:
    print_error(message, detail)
    sys.exit(1)


def format_time(unix: float | None) -> str:
    if not unix:
        return "never"
    return datetime.fromtimestamp(unix).strftime("%Y-%m-%d %H:%M:%S")


def api_request(method: str, url: str, **kwargs) -> dict | None:
    """Make API request to daemon."""
    try:
        response = httpx.request(method, url, timeout=10, **kwargs)
        return response.json()
    except httpx.ConnectError:
        return None
    except httpx.TimeoutException:
        print_warning("Request to the daemon timed out")
        return None
    except (httpx.HTTPError, ValueError) as e:
        print_error("Daemon API error", str(e))
        return None


def load_config_or_exit():
    try:
        return load_config()
    except ClipmeshError as e:
        fail("Cannot load configuration", str(e))


@click.group()
@click.version_option(version=__version__, prog_name="clipmesh")
def main() -> None:
    """clipmesh: replicate clipboard history between your machines."""
    pass


@main.group()
def daemon() -> None:
    """Manage the background sync daemon."""
    pass


@daemon.command("start")
def daemon_start() -> None:
    """Start the sync daemon in the background."""
    from clipmesh.daemon import DaemonAction, start_daemon

    action, pid = start_daemon(load_config_or_exit())

    if action == DaemonAction.DISABLED:
        print_warning("Sync is disabled. Run 'clipmesh sync enable' first.")
    elif action == DaemonAction.ALREADY_RUNNING:
        print_info(f"Sync daemon already running (pid {pid})")
    else:
        print_success(f"Sync daemon started (pid {pid})")


@daemon.command("stop")
def daemon_stop() -> None:
    """Stop the sync daemon."""
    from clipmesh.daemon import DaemonAction, stop_daemon

    action, pid = stop_daemon()

    if action == DaemonAction.STOPPED:
        print_success(f"Sync daemon stopped (pid {pid})")
    elif action == DaemonAction.STALE_CLEANED:
        print_warning("Sync daemon was not running; removed stale pid file")
    else:
        print_info("Sync daemon is not running")


@daemon.command("status")
def daemon_status_command() -> None:
    """Show whether the sync daemon is running."""
    from clipmesh.daemon import DaemonAction, daemon_status

    action, pid = daemon_status()

    if action == DaemonAction.RUNNING:
        console.print(f"[green]● Sync daemon running[/green] (pid {pid})")
    elif action == DaemonAction.STALE_CLEANED:
        console.print("[red]● Sync daemon stopped[/red] (removed stale pid file)")
    else:
        console.print("[red]● Sync daemon stopped[/red]")


@daemon.command("run")
@click.option("--dev", is_flag=True, help="Run in development mode")
@click.option("--host", default=None, help="Listen host (default from config)")
@click.option("--port", default=None, type=int, help="Listen port (default from config)")
def daemon_run(dev: bool, host: str | None, port: int | None) -> None:
    """Run the sync daemon in the foreground."""
    from clipmesh.daemon import run_daemon

    cfg = load_config_or_exit()
    console.print(f"[bold green]Starting clipmesh daemon v{__version__}[/bold green]")
    console.print(f"  Peer ID: {cfg.peer_id}")
    console.print(f"  Listen: {host or cfg.listen_host}:{port or cfg.listen_port}")
    console.print()

    try:
        run_daemon(host=host, port=port, dev_mode=dev, config=cfg)
    except ClipmeshError as e:
        fail("Daemon failed", str(e))


@main.group()
def sync() -> None:
    """Configure peers and run sync passes."""
    pass


@sync.command("now")
@click.option("--peer", "peer_id", default=None, help="Sync only this peer")
def sync_now(peer_id: str | None) -> None:
    """Run one sync pass right away."""
    from clipmesh.sync.engine import SyncEngine

    cfg = load_config_or_exit()
    engine = SyncEngine(cfg)

    async def run():
        try:
            if peer_id:
                results = [await engine.sync_peer(peer_id)]
            else:
                results = (await engine.sync_with_peers()).results
        finally:
            engine.tunnels.close_all()
        return results

    if not peer_id and not cfg.enabled:
        print_warning("Sync is disabled. Run 'clipmesh sync enable' first.")
        return

    with console.status("[cyan]Syncing...[/cyan]", spinner="dots"):
        results = asyncio.run(run())

    if not results:
        print_info("No enabled peers to sync with")
        return

    for r in results:
        if r.success:
            print_success(
                f"{r.peer_id}: pulled {r.pulled}, merged {r.merged}, pushed {r.pushed}"
            )
        else:
            print_error(f"{r.peer_id}: sync failed", r.error)

    failed = sum(1 for r in results if not r.success)
    console.print(f"\n{len(results) - failed} succeeded, {failed} failed")
    if failed and failed == len(results):
        sys.exit(1)


@sync.command("status")
def sync_status() -> None:
    """Show sync configuration and peers."""
    from clipmesh.daemon import DaemonAction, daemon_status

    cfg = load_config_or_exit()
    action, pid = daemon_status()
    live = None
    if action == DaemonAction.RUNNING:
        live = api_request("GET", daemon_url(cfg, "/status"))

    console.print(Panel.fit("[bold]clipmesh Sync[/bold]", border_style="cyan"))
    console.print(f"\n[cyan]Enabled:[/cyan] {'✅' if cfg.enabled else '❌'}")
    console.print(f"[cyan]Peer ID:[/cyan] {cfg.peer_id}")
    console.print(f"[cyan]Listen:[/cyan] {cfg.listen_host}:{cfg.listen_port}")
    console.print(
        f"[cyan]Auto sync:[/cyan] {'every ' + str(cfg.sync_interval_seconds) + 's' if cfg.auto_sync else 'off'}"
    )
    console.print(f"[cyan]Conflicts:[/cyan] {cfg.conflict_resolution}")
    if action == DaemonAction.RUNNING:
        console.print(f"[cyan]Daemon:[/cyan] [green]running[/green] (pid {pid})")
    else:
        console.print("[cyan]Daemon:[/cyan] [red]stopped[/red]")
    if live:
        console.print(f"[cyan]Last sync:[/cyan] {format_time(live.get('last_sync'))}")

    if not cfg.peers:
        console.print("\n[dim]No peers configured. Use 'clipmesh sync add-peer'.[/dim]")
        return

    live_peers = (live or {}).get("peers", {})

    table = Table(show_header=True, title=f"Peers ({len(cfg.peers)})")
    table.add_column("Peer", style="cyan")
    table.add_column("Endpoint")
    table.add_column("Type", width=5)
    table.add_column("Tunnel port", justify="right")
    table.add_column("Enabled", justify="center")
    table.add_column("Synced up to")

    for name, peer in cfg.peers.items():
        table.add_row(
            name,
            peer.endpoint,
            peer.connection_type,
            str(peer.ssh_tunnel.local_port) if peer.ssh_tunnel else "-",
            "✅" if peer.enabled else "❌",
            format_time(live_peers.get(name, {}).get("watermark")),
        )
    console.print()
    console.print(table)


def _set_sync_enabled(enabled: bool) -> None:
    cfg = load_config_or_exit()
    cfg.enabled = enabled
    try:
        save_config(cfg)
    except ClipmeshError as e:
        fail("Cannot save configuration", str(e))
    print_success(f"Sync {'enabled' if enabled else 'disabled'}")


@sync.command("enable")
def sync_enable() -> None:
    """Turn sync on."""
    _set_sync_enabled(True)


@sync.command("disable")
def sync_disable() -> None:
    """Turn sync off."""
    _set_sync_enabled(False)


@sync.command("add-peer")
@click.argument("peer_id")
@click.argument("endpoint")
@click.option("--remote-port", default=8080, type=int, help="Peer's listen port (SSH peers)")
@click.option("--identity-file", "-i", default=None, help="SSH private key (SSH peers)")
def sync_add_peer(peer_id: str, endpoint: str, remote_port: int, identity_file: str | None) -> None:
    """Add a peer by HTTP URL or ssh://user@host:port.

    Examples:
        clipmesh sync add-peer desktop http://192.168.1.20:8080
        clipmesh sync add-peer laptop ssh://me@laptop.local:22
    """
    cfg = load_config_or_exit()
    try:
        peer = cfg.add_peer(peer_id, endpoint, remote_port=remote_port, identity_file=identity_file)
        save_config(cfg)
    except ClipmeshError as e:
        fail(f"Cannot add peer {peer_id}", str(e))

    print_success(f"Added peer {peer_id} ({peer.connection_type})")
    if peer.ssh_tunnel:
        console.print(
            f"  Tunnel: localhost:{peer.ssh_tunnel.local_port} -> "
            f"{peer.ssh_tunnel.target}:{peer.ssh_tunnel.remote_port}"
        )


@sync.command("remove-peer")
@click.argument("peer_id")
def sync_remove_peer(peer_id: str) -> None:
    """Remove a peer."""
    cfg = load_config_or_exit()
    if not cfg.remove_peer(peer_id):
        fail(f"Unknown peer: {peer_id}")
    save_config(cfg)
    print_success(f"Removed peer {peer_id}")


def _set_peer_enabled(peer_id: str, enabled: bool) -> None:
    cfg = load_config_or_exit()
    if not cfg.set_peer_enabled(peer_id, enabled):
        fail(f"Unknown peer: {peer_id}")
    save_config(cfg)
    print_success(f"{'Enabled' if enabled else 'Disabled'} peer {peer_id}")


@sync.command("enable-peer")
@click.argument("peer_id")
def sync_enable_peer(peer_id: str) -> None:
    """Include a peer in sync passes."""
    _set_peer_enabled(peer_id, True)


@sync.command("disable-peer")
@click.argument("peer_id")
def sync_disable_peer(peer_id: str) -> None:
    """Skip a peer in sync passes."""
    _set_peer_enabled(peer_id, False)


@sync.command("test")
@click.argument("peer_id")
def sync_test(peer_id: str) -> None:
    """Check that a peer is reachable."""
    from clipmesh.sync.engine import SyncEngine

    engine = SyncEngine(load_config_or_exit())

    async def run():
        try:
            return await engine.test_peer(peer_id)
        finally:
            engine.tunnels.close_all()

    with console.status(f"[cyan]Testing {peer_id}...[/cyan]", spinner="dots"):
        result = asyncio.run(run())

    if result.success:
        print_success(f"{peer_id} is reachable at {result.endpoint} (peer id {result.remote_peer_id})")
    else:
        fail(f"{peer_id} is not reachable", result.error)


@sync.command("strategy")
@click.argument("value", required=False)
def sync_strategy(value: str | None) -> None:
    """Show or set the conflict strategy.

    VALUE is keep-newest, keep-both, prefer-local or prefer-device:<device id>.
    """
    from clipmesh.history.conflict import ConflictResolutionStrategy

    cfg = load_config_or_exit()
    if value is None:
        console.print(f"Conflict strategy: [cyan]{cfg.conflict_resolution}[/cyan]")
        return

    try:
        cfg.conflict_resolution = ConflictResolutionStrategy.parse(value)
    except ValueError as e:
        fail("Invalid conflict strategy", str(e))
    save_config(cfg)
    print_success(f"Conflict strategy set to {cfg.conflict_resolution}")


def _make_node(cfg):
    from clipmesh.history.store import EntryLog
    from clipmesh.p2p.node import P2PNode
    from clipmesh.p2p.registry import PeerRegistry

    return P2PNode(
        EntryLog(max_entries=cfg.max_entries),
        PeerRegistry(),
        cfg.p2p,
        strategy=cfg.conflict_resolution,
    )


@main.group()
def p2p() -> None:
    """Broadcast mode: direct TCP fan-out to known peers."""
    pass


@p2p.command("serve")
@click.option("--port", default=None, type=int, help="Listen port (default from config)")
def p2p_serve(port: int | None) -> None:
    """Run a receive-only broadcast listener in the foreground.

    Local entries are only broadcast by the daemon (``p2p.enabled``).
    """
    from clipmesh.utils.logging import setup_logging

    cfg = load_config_or_exit()
    if port is not None:
        cfg.p2p.port = port
    setup_logging(level="INFO", log_name="p2p")
    node = _make_node(cfg)

    console.print(f"[bold green]Broadcast listener on {cfg.p2p.host}:{cfg.p2p.port}[/bold green]")
    try:
        asyncio.run(node.serve_forever())
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
    except ClipmeshError as e:
        fail("Broadcast listener failed", str(e))


@p2p.command("connect")
@click.argument("address")
def p2p_connect(address: str) -> None:
    """Check a peer is reachable and add it to the known peers."""
    node = _make_node(load_config_or_exit())
    try:
        address = asyncio.run(node.connect(address))
    except ClipmeshError as e:
        fail(f"Cannot connect to {address}", str(e))
    print_success(f"Connected to {address}")


@p2p.command("peers")
def p2p_peers() -> None:
    """List known broadcast peers and whether they are online."""
    node = _make_node(load_config_or_exit())
    addresses = node.registry.addresses()

    if not addresses:
        console.print("No known peers.")
        return

    async def check():
        return await asyncio.gather(*(node.is_reachable(a) for a in addresses))

    online = asyncio.run(check())

    console.print("Known peers:")
    for index, (address, up) in enumerate(zip(addresses, online), start=1):
        state = "[green]online[/green]" if up else "[red]offline[/red]"
        console.print(f"  {index}. {address} [{state}]")


@p2p.command("request-history")
def p2p_request_history() -> None:
    """Ask every known peer for its history and merge it."""
    node = _make_node(load_config_or_exit())
    if not len(node.registry):
        print_info("No known peers.")
        return

    with console.status("[cyan]Requesting history...[/cyan]", spinner="dots"):
        result = asyncio.run(node.request_history())

    print_success(
        f"{result.succeeded} peers answered, {result.failed} failed, {result.merged} entries merged"
    )


@main.group()
def history() -> None:
    """Inspect and maintain the local clipboard history."""
    pass


@history.command("list")
@click.option("--limit", "-n", default=20, help="Maximum entries")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def history_list(limit: int, as_json: bool) -> None:
    """Show the most recent entries."""
    from clipmesh.history.models import dump_entries
    from clipmesh.history.store import EntryLog

    try:
        entries = EntryLog().newest_first(limit)
    except ClipmeshError as e:
        fail("Cannot read history", f"{e}. Run 'clipmesh history repair' to start over.")

    if as_json:
        click.echo(json.dumps(dump_entries(entries), indent=2, ensure_ascii=False))
        return

    if not entries:
        console.print("[dim]History is empty.[/dim]")
        return

    table = Table(show_header=True)
    table.add_column("#", justify="right", width=4)
    table.add_column("Captured", width=19)
    table.add_column("Device", style="cyan", width=10)
    table.add_column("Content")

    for index, entry in enumerate(entries, start=1):
        captured = entry.captured_at
        preview = entry.content.replace("\n", " ")
        if len(preview) > 60:
            preview = preview[:57] + "..."
        table.add_row(
            str(index),
            captured.astimezone().strftime("%Y-%m-%d %H:%M:%S") if captured else entry.timestamp,
            (entry.device_id or "-")[:8],
            preview,
        )
    console.print(table)


@history.command("append")
@click.argument("content", required=False)
def history_append(content: str | None) -> None:
    """Append CONTENT (or stdin) as a new entry."""
    from clipmesh.history import append_entry

    if content is None:
        content = click.get_text_stream("stdin").read()
    if not content:
        fail("Nothing to append")

    try:
        entry = append_entry(content)
    except ClipmeshError as e:
        fail("Cannot append to history", str(e))
    print_success(f"Appended entry {entry.entry_id}")


@history.command("repair")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def history_repair(yes: bool) -> None:
    """Move an unreadable history aside and start a new one."""
    from clipmesh.history.store import EntryLog

    log = EntryLog()
    try:
        count = len(log.load())
        print_info(f"History is readable ({count} entries); nothing to repair")
        return
    except ClipmeshError as e:
        print_warning(str(e))

    if not yes and not click.confirm("Move the file aside and start a new history?"):
        return

    try:
        backup = log.recreate()
    except ClipmeshError as e:
        fail("Repair failed", str(e))
    if backup:
        print_success(f"Started a new history; old file kept at {backup}")
    else:
        print_success("Started a new history")


@main.group(invoke_without_command=True)
@click.pass_context
def config(ctx) -> None:
    """Configuration management.

    Without subcommand, shows current configuration.
    """
    if ctx.invoked_subcommand is None:
        ctx.invoke(config_show)


@config.command("show")
def config_show() -> None:
    """Show current configuration."""
    cfg = load_config_or_exit()
    console.print_json(cfg.model_dump_json())
    console.print(f"\n[dim]Config file: {get_config_path()}[/dim]")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set a configuration value.

    Examples:
        clipmesh config set sync_interval_seconds 60
        clipmesh config set p2p.enabled true
        clipmesh config set peers.laptop.enabled false
    """
    cfg = load_config_or_exit()

    try:
        set_nested_value(cfg, key, value)
        save_config(cfg)
        print_success(f"Set {key} = {value}")
    except KeyError as e:
        print_error(f"Invalid config key: {key}", str(e))
    except ValueError as e:
        print_error(f"Invalid value for {key}", str(e))


@config.command("get")
@click.argument("key")
def config_get(key: str) -> None:
    """Get a configuration value.

    Examples:
        clipmesh config get listen_port
        clipmesh config get peers.laptop.endpoint
    """
    cfg = load_config_or_exit()
    value = get_nested_value(cfg, key)

    if value is None:
        print_error(f"Key not found: {key}")
    else:
        console.print(f"{key} = {value}")


if __name__ == "__main__":
    main()
