"""
Configuration dataclasses for the proximity relay mesh.

Every tunable of the discovery simulator, the relay engine, the
persistent store and the obfuscation layer lives here. The defaults
match the behavior of the deployed mobile client, so a config file only
needs to name what it changes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class DiscoveryConfig:
    """Proximity discovery behavior.

    - interval_seconds: period of the discovery tick
    - in_range_threshold: a peer is in range when quality > threshold
    - stale_after_seconds: peers not re-observed within this window decay
    - stale_decay: quality penalty applied to stale peers, per scan
    - jitter: max +/- noise the simulated source adds to a known peer
    - smoothing_window: readings kept per peer for the weighted average
    - seed: optional RNG seed for the simulated source
    """

    interval_seconds: float = 5.0
    in_range_threshold: int = 20
    stale_after_seconds: float = 30.0
    stale_decay: int = 10
    jitter: int = 5
    smoothing_window: int = 10
    seed: Optional[int] = None


@dataclass
class RelayConfig:
    """Relay engine timing."""

    interval_seconds: float = 3.0
    carry_ttl_seconds: float = 7 * SECONDS_PER_DAY  # fixed 7 day carry window


@dataclass
class StorageConfig:
    db_path: str = "relaymesh.db"
    key_prefix: str = "relaymesh"


@dataclass
class ObfuscationConfig:
    """Relay payload obfuscation.

    NOTE: this is a reversible XOR + base64 format, not encryption.
    """

    key: str = "connktus_secure_key_2024"


@dataclass
class ContactSeed:
    peer_id: str
    display_name: str
    username: str = ""
    avatar_ref: Optional[str] = None


@dataclass
class MeshManagerConfig:
    """Overall session configuration."""

    user_id: str
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    obfuscation: ObfuscationConfig = field(default_factory=ObfuscationConfig)

    # Contacts known up front (e.g. from a config file); merged into the store.
    contacts: Dict[str, ContactSeed] = field(default_factory=dict)
