"""Tests for the daemon and its process lifecycle."""

import asyncio
import json
import os
import subprocess
import sys
import time

import httpx
import pytest

from clipmesh.config import P2PConfig, SyncConfig, get_pid_path
from clipmesh.daemon import (
    DaemonAction,
    SyncDaemon,
    append_via_daemon,
    create_app,
    daemon_status,
    read_pid,
    remove_pid,
    run_daemon,
    start_daemon,
    stop_daemon,
    write_pid,
)
from clipmesh.errors import ClipmeshError
from clipmesh.p2p.node import P2PNode
from clipmesh.p2p.registry import PeerRegistry


@pytest.fixture
def pid_path(clipmesh_home):
    return get_pid_path()


@pytest.fixture
def sleeper():
    """A real process standing in for a running daemon."""
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait()


def test_status_without_pid_file(pid_path):
    assert daemon_status(pid_path) == (DaemonAction.NOT_RUNNING, None)


def test_status_running(pid_path):
    write_pid(pid_path)

    assert daemon_status(pid_path) == (DaemonAction.RUNNING, os.getpid())


def test_stale_pid_file_is_cleaned(pid_path):
    """Test that a pid file left by a dead process is removed."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    pid_path.write_text(str(proc.pid))

    action, pid = daemon_status(pid_path)

    assert action == DaemonAction.STALE_CLEANED
    assert pid == proc.pid
    assert not pid_path.exists()


def test_garbage_pid_file(pid_path):
    pid_path.write_text("not a pid")

    assert read_pid(pid_path) is None
    assert daemon_status(pid_path)[0] == DaemonAction.STALE_CLEANED


def test_remove_pid_is_idempotent(pid_path):
    remove_pid(pid_path)
    write_pid(pid_path)
    remove_pid(pid_path)

    assert not pid_path.exists()


def test_stop_not_running(pid_path):
    assert stop_daemon(pid_path) == (DaemonAction.NOT_RUNNING, None)


def test_stop_running_daemon(pid_path, sleeper):
    """Test that stop signals the recorded process and clears the pid file."""
    pid_path.write_text(str(sleeper.pid))

    action, pid = stop_daemon(pid_path)

    assert action == DaemonAction.STOPPED
    assert pid == sleeper.pid
    assert sleeper.wait(timeout=5) != 0
    assert not pid_path.exists()


def test_start_refuses_when_disabled(pid_path):
    action, pid = start_daemon(SyncConfig(enabled=False), pid_path)

    assert action == DaemonAction.DISABLED
    assert pid is None


def test_start_when_already_running(pid_path, sleeper):
    pid_path.write_text(str(sleeper.pid))

    action, pid = start_daemon(SyncConfig(enabled=True), pid_path)

    assert action == DaemonAction.ALREADY_RUNNING
    assert pid == sleeper.pid


@pytest.mark.asyncio
async def test_daemon_start_stop(clipmesh_home, local_log):
    daemon = SyncDaemon(config=SyncConfig(peer_id="me@box-0001"), log=local_log)

    await daemon.start()
    status = daemon.get_status()
    await daemon.stop()

    assert status["running"] is True
    assert status["peer_id"] == "me@box-0001"
    assert status["p2p"]["running"] is False
    assert daemon.running is False
    assert (clipmesh_home / "logs").is_dir()


@pytest.mark.asyncio
async def test_daemon_with_broadcast_node(clipmesh_home, local_log):
    """Test that broadcast mode hooks the node onto local appends."""
    config = SyncConfig(p2p=P2PConfig(enabled=True, host="127.0.0.1", port=0))
    daemon = SyncDaemon(config=config, log=local_log)

    await daemon.start()
    try:
        assert daemon.node is not None and daemon.node.running
        assert local_log.on_append == daemon.node.notify
        assert daemon.get_status()["p2p"]["running"] is True
    finally:
        await daemon.stop()

    assert local_log.on_append is None
    assert not daemon.node.running


@pytest.mark.asyncio
async def test_daemon_captures_clipboard(clipmesh_home, local_log):
    """Test that clipboard changes seen by the watcher are appended."""
    clipboard = {"value": "already there"}
    daemon = SyncDaemon(
        config=SyncConfig(),
        log=local_log,
        clipboard_reader=lambda: clipboard["value"],
    )

    await daemon.start()
    try:
        daemon.watcher.poll_interval = 0.01
        clipboard["value"] = "freshly copied"
        deadline = time.monotonic() + 3
        while daemon.entries_captured == 0 and time.monotonic() < deadline:
            await asyncio.sleep(0.02)
    finally:
        await daemon.stop()

    assert [e.content for e in local_log.load()] == ["freshly copied"]


def test_receive_entries_updates_stats(local_log, make_entry):
    daemon = SyncDaemon(config=SyncConfig(), log=local_log)

    result = daemon.receive_entries("desk", [make_entry("x", entry_id="1")])
    again = daemon.receive_entries("desk", [make_entry("x", entry_id="1")])

    assert result.added == 1
    assert again.added == 0
    assert daemon.entries_received == 1
    assert "desk" in daemon.last_seen


@pytest.mark.asyncio
async def test_run_sync_pass_counts(local_log):
    daemon = SyncDaemon(config=SyncConfig(enabled=False), log=local_log)

    report = await daemon.run_sync_pass()

    assert report.results == []
    assert daemon.passes_run == 1
    assert daemon.last_report is report


def test_status_reports_corrupt_history(local_log):
    local_log.path.write_text("{broken")
    daemon = SyncDaemon(config=SyncConfig(), log=local_log)

    assert daemon.get_status()["history_size"] is None


def test_run_refuses_when_already_running(pid_path, sleeper):
    """Test that a second foreground run leaves the live daemon's pid alone."""
    pid_path.write_text(str(sleeper.pid))

    with pytest.raises(ClipmeshError, match="already running"):
        run_daemon(config=SyncConfig(), pid_path=pid_path)

    assert read_pid(pid_path) == sleeper.pid


def test_append_via_daemon_when_not_running(pid_path):
    def handler(request):
        raise AssertionError("no daemon should be contacted")

    entry = append_via_daemon("x", SyncConfig(), pid_path, transport=httpx.MockTransport(handler))

    assert entry is None


def test_append_via_daemon_posts_to_daemon(pid_path, make_entry):
    """Test that a running daemon is asked to append the entry."""
    write_pid(pid_path)
    stored = make_entry("from cli", at=100, entry_id="e1", device_id="dev-daemon")
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"entry": stored.to_record()})

    entry = append_via_daemon(
        "from cli",
        SyncConfig(listen_port=9999),
        pid_path,
        transport=httpx.MockTransport(handler),
    )

    assert entry == stored
    assert str(requests[0].url) == "http://127.0.0.1:9999/append"
    assert json.loads(requests[0].content) == {"content": "from cli"}


@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"error": "Corrupt clipboard history"}),
    httpx.Response(200, json={"unexpected": True}),
    httpx.Response(200, text="not json"),
])
def test_append_via_daemon_failure_returns_none(pid_path, response):
    write_pid(pid_path)

    entry = append_via_daemon(
        "x",
        SyncConfig(),
        pid_path,
        transport=httpx.MockTransport(lambda request: response),
    )

    assert entry is None


@pytest.mark.asyncio
async def test_appended_entry_reaches_broadcast_peer(clipmesh_home, local_log, remote_log):
    """Test that an entry handed to the daemon is broadcast to known peers."""
    loopback = P2PConfig(enabled=True, host="127.0.0.1", port=0)
    peer = P2PNode(remote_log, PeerRegistry(clipmesh_home / "peer_known"), loopback)
    await peer.start()
    registry = PeerRegistry(clipmesh_home / "known_peers.txt")
    registry.add(f"127.0.0.1:{peer.port}")
    daemon = SyncDaemon(config=SyncConfig(p2p=loopback), log=local_log, registry=registry)

    await daemon.start()
    try:
        transport = httpx.ASGITransport(app=create_app(daemon))
        async with httpx.AsyncClient(transport=transport, base_url="http://clipmesh") as client:
            response = await client.post("/append", json={"content": "copied elsewhere"})
        assert response.status_code == 200

        deadline = time.monotonic() + 3
        while not remote_log.load() and time.monotonic() < deadline:
            await asyncio.sleep(0.02)
    finally:
        await daemon.stop()
        await peer.stop()

    assert [e.content for e in remote_log.load()] == ["copied elsewhere"]
    assert daemon.entries_captured == 1
