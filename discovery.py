"""
Proximity discovery:

- `ProximitySource` abstracts where raw signal readings come from.
- `SimulatedProximitySource` stands in for radio scanning (random walk).
- `DiscoverySimulator` owns the peer table: smoothing, stale decay and
  in-range classification on every scan.

A hardware backend only replaces the source; smoothing, decay and the
in-range threshold stay here because the relay engine depends on them.
"""

from __future__ import annotations

import dataclasses
import logging
import random
from typing import Dict, Iterable, List, Optional, Protocol

from mesh_config import DiscoveryConfig
from relay_records import Contact, PeerObservation
from signal_model import SignalHistory, clamp_quality, signal_to_distance

LOG = logging.getLogger(__name__)

INITIAL_QUALITY_MIN = 50
INITIAL_QUALITY_MAX = 80  # exclusive


# ----------------------------------------------------------------------
# Proximity source abstraction
# ----------------------------------------------------------------------

class ProximitySource(Protocol):
    """Minimal signal source interface used by DiscoverySimulator.

        sample(peer_id, baseline) -> int

    `baseline` is the peer's smoothed (or last known) quality, or None if
    the peer has never been observed. The return value is a raw 0..100
    quality reading; out-of-range values are clamped by the caller.
    """

    def sample(self, peer_id: str, baseline: Optional[int]) -> int: ...


class SimulatedProximitySource:
    """
    Random-walk signal source.

    - New peer: uniform integer in [50, 80), returned unmodified.
    - Known peer: baseline +/- jitter, clamped to 0..100.
    """

    def __init__(self, jitter: int = 5, seed: Optional[int] = None) -> None:
        self._jitter = max(0, int(jitter))
        self._rng = random.Random(seed)

    def sample(self, peer_id: str, baseline: Optional[int]) -> int:
        if baseline is None:
            return self._rng.randrange(INITIAL_QUALITY_MIN, INITIAL_QUALITY_MAX)
        variation = self._rng.randint(-self._jitter, self._jitter)
        return clamp_quality(baseline + variation)


# ----------------------------------------------------------------------
# Discovery simulator
# ----------------------------------------------------------------------

class DiscoverySimulator:
    """
    Peer table maintenance driven by a ProximitySource.

    Not thread-safe on its own; MeshManager holds its lock around scan().
    Entries are never deleted when a peer drops out of range, they decay
    in place.
    """

    def __init__(
        self,
        self_ids: Iterable[str],
        source: ProximitySource,
        config: Optional[DiscoveryConfig] = None,
        history: Optional[SignalHistory] = None,
    ) -> None:
        self._config = config or DiscoveryConfig()
        self._self_ids = {s for s in self_ids if s}
        self._source = source
        self._history = history if history is not None else SignalHistory(self._config.smoothing_window)
        # peer_id -> observation; insertion order is the carrier tie-break order
        self._peers: Dict[str, PeerObservation] = {}

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------

    @property
    def history(self) -> SignalHistory:
        return self._history

    @property
    def threshold(self) -> int:
        return self._config.in_range_threshold

    def is_self(self, peer_id: str) -> bool:
        return peer_id in self._self_ids

    def get(self, peer_id: str) -> Optional[PeerObservation]:
        return self._peers.get(peer_id)

    def is_in_range(self, peer_id: str) -> bool:
        obs = self._peers.get(peer_id)
        return obs is not None and obs.in_range

    def snapshot(self) -> List[PeerObservation]:
        return [dataclasses.replace(obs) for obs in self._peers.values()]

    def in_range_peers(self) -> List[PeerObservation]:
        return [obs for obs in self._peers.values() if obs.in_range]

    def load(self, peers: Iterable[PeerObservation]) -> None:
        """Seed the table from persisted observations (e.g. after restart)."""
        for obs in peers:
            if self.is_self(obs.peer_id):
                continue
            self._peers[obs.peer_id] = dataclasses.replace(obs)

    def clear(self) -> None:
        self._peers.clear()

    # ------------------------------------------------------------------
    # scanning
    # ------------------------------------------------------------------

    def _baseline_for(self, peer_id: str) -> Optional[int]:
        if self._history.has_history(peer_id):
            return self._history.smoothed(peer_id)
        prev = self._peers.get(peer_id)
        if prev is not None:
            return prev.signal_quality
        return None

    def _observe(self, peer_id: str, contact_ref: str, raw_quality: float, now: float) -> PeerObservation:
        prev = self._peers.get(peer_id)
        quality = clamp_quality(raw_quality)

        # Absence is active decay: peers not re-observed recently lose signal.
        if prev is not None and (now - prev.last_seen) > self._config.stale_after_seconds:
            quality = max(0, quality - self._config.stale_decay)

        in_range = quality > self._config.in_range_threshold
        self._history.push(peer_id, quality, now)

        if in_range or prev is None:
            last_seen = now
        else:
            last_seen = prev.last_seen

        obs = PeerObservation(
            peer_id=peer_id,
            contact_ref=contact_ref,
            signal_quality=quality,
            in_range=in_range,
            last_seen=last_seen,
            estimated_distance_m=signal_to_distance(quality),
        )
        self._peers[peer_id] = obs
        return obs

    def scan(self, contacts: Iterable[Contact], now: float) -> List[PeerObservation]:
        """
        Run one discovery pass over the known contacts.

        Returns copies of this tick's observations in contact order. The
        caller is responsible for persisting the peer table and history.
        """
        out: List[PeerObservation] = []
        for contact in contacts:
            peer_id = contact.peer_id
            if not peer_id or self.is_self(peer_id):
                continue
            baseline = self._baseline_for(peer_id)
            raw = self._source.sample(peer_id, baseline)
            obs = self._observe(peer_id, contact.peer_id, raw, now)
            out.append(dataclasses.replace(obs))

        LOG.debug(
            "Scan: %d peer(s) known, %d in range",
            len(self._peers),
            sum(1 for o in out if o.in_range),
        )
        return out

    def add_discovered_peer(
        self,
        peer_id: str,
        signal_quality: float,
        now: float,
        contact_ref: Optional[str] = None,
    ) -> PeerObservation:
        """Record a peer reported directly (e.g. a manual pairing)."""
        if self.is_self(peer_id):
            raise ValueError("cannot add the local peer as a discovered peer")
        quality = clamp_quality(signal_quality)
        obs = PeerObservation(
            peer_id=peer_id,
            contact_ref=contact_ref or peer_id,
            signal_quality=quality,
            in_range=quality > self._config.in_range_threshold,
            last_seen=now,
            estimated_distance_m=signal_to_distance(quality),
        )
        self._peers[peer_id] = obs
        self._history.push(peer_id, quality, now)
        return dataclasses.replace(obs)
