# tests/test_relay_daemon.py
"""Command-line parsing and event formatting for the headless daemon."""

from pathlib import Path

from mesh_config import MeshManagerConfig
from mesh_manager import MessageDeliveredEvent, PeerListEvent, StatusEvent
from relay_daemon import (
    _apply_overrides,
    _format_event,
    _format_stats,
    _parse_args,
    _resolve_db_path,
)
from relay_records import Message, PeerObservation

from conftest import T0


def test_defaults():
    args = _parse_args([])
    assert args.config == "config.yaml"
    assert args.user_id == ""
    assert args.verbose == 1


def test_overrides():
    args = _parse_args(["--config", "x.yaml", "--user-id", "bob", "-vv"])
    assert args.config == "x.yaml"
    assert args.user_id == "bob"
    assert args.verbose == 3


def test_db_override_relative_to_config(tmp_path):
    config_path = tmp_path / "conf" / "config.yaml"
    assert Path(_resolve_db_path(config_path, "mesh.db")) == (tmp_path / "conf" / "mesh.db").resolve()
    assert _resolve_db_path(config_path, ":memory:") == ":memory:"


def test_format_events():
    peers = [
        PeerObservation("bob", "bob", 70, True, T0, 7),
        PeerObservation("carol", "carol", 10, False, T0, 21),
    ]
    line = _format_event(PeerListEvent(peers=peers))
    assert line.startswith("[PEERS] 1/2 in range")
    assert "bob(70%, ~7m)" in line
    assert "carol" not in line

    msg = Message("m1", "conv-1", "zed", "alice", "hello", T0, "delivered")
    assert _format_event(MessageDeliveredEvent(message=msg)).endswith("zed -> alice: hello")
    assert _format_event(StatusEvent(text="ok")) == "[STATUS] ok"


def test_overrides_applied_to_config(tmp_path):
    config_path = tmp_path / "config.yaml"
    config = MeshManagerConfig(user_id="alice")
    args = _parse_args(["--user-id", "bob", "--db-path", "state/mesh.db", "--seed", "7"])

    _apply_overrides(config, args, config_path)

    assert config.user_id == "bob"
    assert Path(config.storage.db_path) == (tmp_path / "state" / "mesh.db").resolve()
    assert config.discovery.seed == 7


def test_stats_line():
    stats = {
        "peers_in_range": 1,
        "peers_known": 3,
        "carried": 2,
        "pending": 4,
        "delivered_carried_total": 5,
        "expired_total": 0,
    }
    assert _format_stats(stats) == (
        "[STATS] in range 1/3, carrying 2, pending 4, relayed 5, expired 0"
    )
