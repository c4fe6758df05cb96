#!/usr/bin/env python3
"""Headless proximity relay daemon.

Runs one MeshManager session without any UI:
- discovery and relay ticks on the configured schedule
- carried messages delivered or expired, state kept in the SQLite store
- peer lists, deliveries and status lines printed to stdout
- a periodic stats summary (optional)

SIGINT/SIGTERM stop the session and close the store.
"""

from __future__ import annotations

import argparse
import logging
import queue
import signal
import sys
import time
from pathlib import Path
from typing import Optional

from config_loader import load_mesh_config_from_yaml
from mesh_config import MeshManagerConfig
from mesh_manager import (
    MeshEvent,
    MeshManager,
    MessageDeliveredEvent,
    PeerListEvent,
    StatusEvent,
)

LOG = logging.getLogger("relay_daemon")

_LEVELS = {0: logging.WARNING, 1: logging.INFO}


def _configure_stdout_logging(verbosity: int) -> None:
    logging.basicConfig(
        level=_LEVELS.get(verbosity, logging.DEBUG),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _resolve_db_path(config_path: Path, override: str) -> str:
    if override == ":memory:":
        return override
    db = Path(override).expanduser()
    if not db.is_absolute():
        db = config_path.parent / db
    return str(db.resolve())


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="relaymesh-daemon",
        description="Run a store-and-carry relay session without a UI",
    )
    ap.add_argument("--config", default="config.yaml", help="YAML config file (default: config.yaml)")
    ap.add_argument("--user-id", default="", help="Override mesh.user_id")
    ap.add_argument("--db-path", default="", help="Override storage.db_path (relative to the config dir)")
    ap.add_argument("--seed", type=int, default=None, help="Seed the simulated proximity source")
    ap.add_argument(
        "--stats-every",
        type=float,
        default=0.0,
        metavar="SECONDS",
        help="Print a stats summary at this period (0 disables)",
    )
    ap.add_argument("-v", "--verbose", action="count", default=1, help="More logging (-vv for DEBUG)")
    return ap.parse_args(argv)


def _apply_overrides(config: MeshManagerConfig, args: argparse.Namespace, config_path: Path) -> None:
    user_id = str(args.user_id or "").strip()
    if user_id:
        config.user_id = user_id

    db_override = str(args.db_path or "").strip()
    if db_override:
        config.storage.db_path = _resolve_db_path(config_path, db_override)

    if args.seed is not None:
        config.discovery.seed = int(args.seed)


def _format_event(ev: MeshEvent) -> str:
    if isinstance(ev, StatusEvent):
        return f"[STATUS] {ev.text}"
    if isinstance(ev, PeerListEvent):
        near = [p for p in ev.peers if p.in_range]
        parts = [f"{p.peer_id}({p.signal_quality}%, ~{p.estimated_distance_m}m)" for p in near]
        return f"[PEERS] {len(near)}/{len(ev.peers)} in range: {', '.join(parts)}"
    if isinstance(ev, MessageDeliveredEvent):
        msg = ev.message
        when = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(msg.created_at))
        return f"[{when}] {msg.sender_id} -> {msg.recipient_id}: {msg.content}"
    return f"[EVENT] {ev!r}"


def _format_stats(stats: dict) -> str:
    return (
        "[STATS] in range {peers_in_range}/{peers_known}, carrying {carried}, "
        "pending {pending}, relayed {delivered_carried_total}, "
        "expired {expired_total}".format(**stats)
    )


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_stdout_logging(int(args.verbose))

    config_path = Path(str(args.config)).expanduser().resolve()
    config = load_mesh_config_from_yaml(str(config_path))
    _apply_overrides(config, args, config_path)

    manager = MeshManager(config)
    stop = False

    def _handle_signal(signum: int, _frame) -> None:  # type: ignore[no-untyped-def]
        nonlocal stop
        LOG.info("Signal %d received; shutting down", signum)
        stop = True

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    events = manager.get_event_queue()
    manager.start()
    print(f"[STATUS] peer id {manager.own_identity()}, {manager.carried_count()} carried message(s)")

    stats_every = float(args.stats_every)
    next_stats = time.monotonic() + stats_every
    try:
        while not stop:
            if stats_every > 0 and time.monotonic() >= next_stats:
                print(_format_stats(manager.stats()))
                next_stats = time.monotonic() + stats_every
            try:
                ev = events.get(timeout=0.5)
            except queue.Empty:
                continue
            print(_format_event(ev))
    finally:
        manager.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
