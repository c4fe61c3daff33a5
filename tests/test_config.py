"""Tests for configuration module."""

import json

import pytest

from clipmesh.config import (
    SSH_TUNNEL_BASE_PORT,
    PeerConfig,
    SyncConfig,
    get_nested_value,
    load_config,
    parse_ssh_endpoint,
    save_config,
    set_nested_value,
)
from clipmesh.errors import ConfigError
from clipmesh.history.conflict import StrategyKind


def test_default_config():
    """Test default configuration."""
    config = SyncConfig()

    assert config.version == "1.0"
    assert config.enabled is False
    assert config.listen_port == 8080
    assert config.sync_interval_seconds == 30
    assert config.auto_sync is True
    assert config.conflict_resolution.strategy == StrategyKind.KEEP_NEWEST
    assert config.p2p.port == 7643
    assert config.peers == {}


def test_default_peer_id_shape():
    """Test that generated peer ids look like user@host-xxxx."""
    peer_id = SyncConfig().peer_id
    user, _, rest = peer_id.partition("@")

    assert user
    assert len(rest.rsplit("-", 1)[1]) == 4


def test_config_save_load(temp_dir):
    """Test saving and loading configuration."""
    config_path = temp_dir / "sync_config.json"

    config = SyncConfig(enabled=True, peer_id="me@box-abcd")
    config.add_peer("desk", "http://192.168.1.20:8080")

    save_config(config, config_path)
    assert config_path.exists()

    loaded = load_config(config_path)
    assert loaded == config


def test_load_nonexistent_config(temp_dir):
    """Test loading nonexistent config creates and saves defaults."""
    config_path = temp_dir / "nonexistent.json"
    config = load_config(config_path)

    assert config.version == "1.0"
    assert config_path.exists()
    assert load_config(config_path).peer_id == config.peer_id


def test_load_original_format(temp_dir):
    """Test reading a config written with the older field names."""
    config_path = temp_dir / "sync_config.json"
    config_path.write_text(json.dumps({
        "enabled": True,
        "peer_id": "alice@laptop-1a2b",
        "listen_port": 9000,
        "sync_interval_seconds": 45,
        "auto_sync": False,
        "conflict_resolution": {"PreferSpecificDevice": "desk"},
        "peers": {
            "server": {
                "endpoint": "ssh://alice@server:2222",
                "enabled": True,
                "ssh_config": {
                    "ssh_user": "alice",
                    "ssh_host": "server",
                    "ssh_port": None,
                    "identity_file": None,
                    "tunnel_local_port": 8081,
                    "remote_port": 8080,
                },
            },
        },
    }))

    config = load_config(config_path)

    assert config.peer_id == "alice@laptop-1a2b"
    assert config.listen_port == 9000
    assert config.conflict_resolution.device_id == "desk"
    tunnel = config.peers["server"].ssh_tunnel
    assert tunnel.local_port == 8081
    assert tunnel.ssh_port == 22


def test_load_salvages_broken_config(temp_dir):
    """Test that a config failing validation keeps its usable fields."""
    config_path = temp_dir / "sync_config.json"
    config_path.write_text(json.dumps({
        "enabled": True,
        "peer_id": "bob@desk-0000",
        "listen_port": 8181,
        "conflict_resolution": "CoinFlip",
        "peers": {
            "good": {"endpoint": "http://10.0.0.2:8080"},
            "bad": {"enabled": "sometimes"},
        },
    }))

    config = load_config(config_path)

    assert config.enabled is True
    assert config.peer_id == "bob@desk-0000"
    assert config.listen_port == 8181
    assert list(config.peers) == ["good"]
    # Saved back in the current format
    assert SyncConfig.model_validate_json(config_path.read_text()) == config


def test_load_unparseable_config_falls_back_to_defaults(temp_dir):
    config_path = temp_dir / "sync_config.json"
    config_path.write_text("this is not json")

    config = load_config(config_path)

    assert config.enabled is False
    assert config.peers == {}


def test_save_config_failure_raises(temp_dir):
    """Test that an unwritable location is reported."""
    blocker = temp_dir / "file"
    blocker.write_text("")

    with pytest.raises(ConfigError):
        save_config(SyncConfig(), blocker / "sync_config.json")


def test_parse_ssh_endpoint():
    assert parse_ssh_endpoint("ssh://bob@example.com:2222") == ("bob", "example.com", 2222)
    assert parse_ssh_endpoint("ssh://bob@example.com")[2] == 22

    with pytest.raises(ConfigError):
        parse_ssh_endpoint("http://example.com")


def test_add_http_peer():
    config = SyncConfig()
    peer = config.add_peer("desk", "http://192.168.1.20:8080")

    assert peer.ssh_tunnel is None
    assert peer.connection_type == "HTTP"
    assert config.enabled_peers() == {"desk": peer}


def test_add_ssh_peers_allocate_tunnel_ports():
    """Test that SSH peers get consecutive local ports from the base."""
    config = SyncConfig()
    first = config.add_peer("a", "ssh://me@host-a:22")
    second = config.add_peer("b", "ssh://me@host-b:2200", identity_file="~/.ssh/id_ed25519")

    assert first.ssh_tunnel.local_port == SSH_TUNNEL_BASE_PORT
    assert second.ssh_tunnel.local_port == SSH_TUNNEL_BASE_PORT + 1
    assert second.ssh_tunnel.ssh_port == 2200
    assert second.ssh_tunnel.identity_file == "~/.ssh/id_ed25519"
    assert second.connection_type == "SSH"


def test_replacing_ssh_peer_reuses_its_port():
    config = SyncConfig()
    config.add_peer("a", "ssh://me@host-a")
    replaced = config.add_peer("a", "ssh://me@host-a2")

    assert replaced.ssh_tunnel.local_port == SSH_TUNNEL_BASE_PORT


def test_remove_and_toggle_peer():
    config = SyncConfig()
    config.add_peer("desk", "http://desk:8080")

    assert config.set_peer_enabled("desk", False)
    assert config.enabled_peers() == {}
    assert not config.set_peer_enabled("ghost", True)

    assert config.remove_peer("desk")
    assert not config.remove_peer("desk")


def test_nested_get_set():
    """Test dotted key access used by the config CLI."""
    config = SyncConfig()
    config.peers["desk"] = PeerConfig(endpoint="http://desk:8080")

    set_nested_value(config, "sync_interval_seconds", "60")
    set_nested_value(config, "p2p.enabled", "true")
    set_nested_value(config, "peers.desk.enabled", "false")
    set_nested_value(config, "p2p.connect_timeout", "1.5")

    assert get_nested_value(config, "sync_interval_seconds") == 60
    assert get_nested_value(config, "p2p.enabled") is True
    assert get_nested_value(config, "peers.desk.enabled") is False
    assert get_nested_value(config, "p2p.connect_timeout") == 1.5
    assert get_nested_value(config, "no.such.key") is None


def test_nested_set_rejects_unknown_keys():
    config = SyncConfig()
    with pytest.raises(KeyError):
        set_nested_value(config, "nope", "1")
    with pytest.raises(KeyError):
        set_nested_value(config, "p2p", "x")


@pytest.mark.parametrize("key,value", [
    ("sync_interval_seconds", "0"),
    ("listen_port", "99999"),
    ("p2p.queue_size", "0"),
])
def test_nested_set_validates_values(key, value):
    config = SyncConfig()
    before = get_nested_value(config, key)

    with pytest.raises(ValueError):
        set_nested_value(config, key, value)
    assert get_nested_value(config, key) == before


@pytest.mark.parametrize("endpoint", [
    "http://host:notaport",
    "ftp://somewhere",
    "http://",
    "desk:8080",
])
def test_add_peer_rejects_bad_http_endpoints(endpoint):
    config = SyncConfig()

    with pytest.raises(ConfigError):
        config.add_peer("bad", endpoint)
    assert config.peers == {}
