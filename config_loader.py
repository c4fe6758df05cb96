# config_loader.py
#
# YAML -> in-memory config structs for the relay mesh session.
#
# Every section is optional except `mesh.user_id`; missing keys fall back
# to the dataclass defaults in mesh_config.

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # pip install pyyaml

from mesh_config import (
    ContactSeed,
    DiscoveryConfig,
    MeshManagerConfig,
    ObfuscationConfig,
    RelayConfig,
    StorageConfig,
)


def _get_required(mapping: Dict[str, Any], key: str) -> Any:
    if key not in mapping:
        raise KeyError(f"Missing required config key: {key}")
    return mapping[key]


def _section(root: Dict[str, Any], name: str) -> Dict[str, Any]:
    section_any = root.get(name, {})
    if not isinstance(section_any, dict):
        return {}
    return section_any


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

def load_discovery_config(root: Dict[str, Any]) -> DiscoveryConfig:
    """Load the `discovery` section.

    Example YAML:

        discovery:
          interval_seconds: 5.0
          in_range_threshold: 20
          stale_after_seconds: 30.0
          stale_decay: 10
          jitter: 5
          smoothing_window: 10
          seed: 1234
    """

    cfg = _section(root, "discovery")

    interval = float(cfg.get("interval_seconds", 5.0))
    threshold = int(cfg.get("in_range_threshold", 20))
    stale_after = float(cfg.get("stale_after_seconds", 30.0))
    stale_decay = int(cfg.get("stale_decay", 10))
    jitter = int(cfg.get("jitter", 5))
    window = int(cfg.get("smoothing_window", 10))
    seed_any = cfg.get("seed")
    seed = int(seed_any) if seed_any is not None else None

    if interval <= 0.0:
        raise ValueError("discovery.interval_seconds must be > 0")
    if threshold < 0 or threshold > 100:
        raise ValueError("discovery.in_range_threshold must be within 0..100")
    if stale_after < 0.0:
        raise ValueError("discovery.stale_after_seconds must be >= 0")
    if stale_decay < 0:
        raise ValueError("discovery.stale_decay must be >= 0")
    if jitter < 0:
        raise ValueError("discovery.jitter must be >= 0")
    if window < 1:
        raise ValueError("discovery.smoothing_window must be >= 1")

    return DiscoveryConfig(
        interval_seconds=interval,
        in_range_threshold=threshold,
        stale_after_seconds=stale_after,
        stale_decay=stale_decay,
        jitter=jitter,
        smoothing_window=window,
        seed=seed,
    )


def load_relay_config(root: Dict[str, Any]) -> RelayConfig:
    cfg = _section(root, "relay")

    interval = float(cfg.get("interval_seconds", 3.0))
    carry_ttl = float(cfg.get("carry_ttl_seconds", RelayConfig.carry_ttl_seconds))

    if interval <= 0.0:
        raise ValueError("relay.interval_seconds must be > 0")
    if carry_ttl <= 0.0:
        raise ValueError("relay.carry_ttl_seconds must be > 0")

    return RelayConfig(interval_seconds=interval, carry_ttl_seconds=carry_ttl)


def load_storage_config(root: Dict[str, Any], config_path: Optional[str] = None) -> StorageConfig:
    """Load the `storage` section; db_path is relative to the config file."""

    cfg = _section(root, "storage")

    raw_db_path = str(cfg.get("db_path", "relaymesh.db"))
    if raw_db_path != ":memory:" and config_path is not None:
        db_path = str(Path(config_path).parent.joinpath(raw_db_path).resolve())
    else:
        db_path = raw_db_path

    key_prefix = str(cfg.get("key_prefix", "relaymesh") or "").strip()
    if not key_prefix:
        raise ValueError("storage.key_prefix must not be empty")

    return StorageConfig(db_path=db_path, key_prefix=key_prefix)


def load_obfuscation_config(root: Dict[str, Any]) -> ObfuscationConfig:
    cfg = _section(root, "obfuscation")
    key = str(cfg.get("key", ObfuscationConfig.key))
    if not key:
        raise ValueError("obfuscation.key must not be empty")
    return ObfuscationConfig(key=key)


def load_contact_seeds(root: Dict[str, Any]) -> Dict[str, ContactSeed]:
    """Load the optional `contacts` mapping (nickname -> contact fields)."""

    contacts_any = root.get("contacts", {})
    if contacts_any is None:
        return {}
    if not isinstance(contacts_any, dict):
        raise ValueError("contacts must be a mapping")

    seeds: Dict[str, ContactSeed] = {}
    for nickname, entry_any in contacts_any.items():
        if not isinstance(entry_any, dict):
            raise ValueError(f"contacts.{nickname} must be a mapping")
        peer_id = str(entry_any.get("peer_id", nickname) or "").strip()
        if not peer_id:
            raise ValueError(f"contacts.{nickname}.peer_id must not be empty")
        avatar = entry_any.get("avatar_ref")
        seeds[str(nickname)] = ContactSeed(
            peer_id=peer_id,
            display_name=str(entry_any.get("display_name", nickname)),
            username=str(entry_any.get("username", "") or ""),
            avatar_ref=str(avatar) if avatar is not None else None,
        )
    return seeds


# ---------------------------------------------------------------------------
# Whole config
# ---------------------------------------------------------------------------

def load_mesh_config(root: Dict[str, Any], config_path: Optional[str] = None) -> MeshManagerConfig:
    mesh_cfg = _section(root, "mesh")
    user_id = str(_get_required(mesh_cfg, "user_id") or "").strip()
    if not user_id:
        raise ValueError("mesh.user_id must not be empty")

    return MeshManagerConfig(
        user_id=user_id,
        discovery=load_discovery_config(root),
        relay=load_relay_config(root),
        storage=load_storage_config(root, config_path),
        obfuscation=load_obfuscation_config(root),
        contacts=load_contact_seeds(root),
    )


def load_mesh_config_from_yaml(path: str) -> MeshManagerConfig:
    """Load a complete MeshManagerConfig from a YAML file."""

    with open(path, "r", encoding="utf-8") as f:
        root = yaml.safe_load(f)

    if not isinstance(root, dict):
        raise ValueError("Top-level YAML must be a mapping")

    return load_mesh_config(root, config_path=path)
