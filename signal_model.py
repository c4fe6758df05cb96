"""
Signal quality model.

Pure mapping between the synthetic 0..100 signal quality score and an
estimated distance in meters, plus the per-peer smoothing windows used to
tame noisy readings.

Breakpoints (quality -> distance):

    100 .. 90  ->  0 m      (direct contact)
     75        -> ~5 m
     50        -> ~10 m
     25        -> ~15 m
      0        -> >20 m     (out of range)
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

MAX_QUALITY = 100
MIN_QUALITY = 0
DEFAULT_WINDOW = 10
OUT_OF_RANGE_DISTANCE_M = 20


def _round_half_up(x: float) -> int:
    # Readings are non-negative; keep .5 rounding up rather than to even.
    return int(math.floor(x + 0.5))


def clamp_quality(q: float) -> int:
    if q != q:  # NaN
        return MIN_QUALITY
    return int(max(MIN_QUALITY, min(MAX_QUALITY, _round_half_up(q))))


def signal_to_distance(q: float) -> int:
    """Estimate distance (meters) from a signal quality score."""
    q = max(MIN_QUALITY, min(MAX_QUALITY, q))
    if q >= 90:
        return 0
    if q >= 75:
        return _round_half_up((100 - q) * 0.3)
    if q >= 50:
        return _round_half_up(5 + (75 - q) * 0.2)
    if q >= 25:
        return _round_half_up(10 + (50 - q) * 0.2)
    return _round_half_up(15 + (25 - q) * 0.4)


def distance_to_signal(d: float) -> int:
    """Inverse of signal_to_distance (lossy, piecewise linear)."""
    if d <= 0:
        return MAX_QUALITY
    if d <= 5:
        q = 100 - d * 5
    elif d <= 10:
        q = 75 - (d - 5) * 5
    elif d <= 15:
        q = 50 - (d - 10) * 5
    elif d < OUT_OF_RANGE_DISTANCE_M:
        q = 25 - (d - 15) * 5
    else:
        return MIN_QUALITY
    return clamp_quality(q)


def smooth(readings: Iterable[float], max_window: int = DEFAULT_WINDOW) -> int:
    """Linearly weighted moving average, newest reading weighted most.

    Only the last `max_window` readings count. Weight is the 1-indexed
    position from oldest to newest. Returns 0 for no readings.
    """
    window = list(readings)[-max_window:] if max_window > 0 else []
    if not window:
        return 0

    weighted_sum = 0.0
    total_weight = 0
    for index, value in enumerate(window):
        weight = index + 1
        weighted_sum += value * weight
        total_weight += weight

    return _round_half_up(weighted_sum / total_weight)


@dataclass
class SignalReading:
    signal: int
    timestamp: float


class SignalHistory:
    """
    Per-peer FIFO windows of recent signal readings.

    - At most `max_window` readings per peer; the oldest is evicted first.
    - Not thread-safe on its own; the mesh manager serializes access.
    """

    def __init__(self, max_window: int = DEFAULT_WINDOW) -> None:
        if max_window < 1:
            raise ValueError("max_window must be >= 1")
        self._max_window = int(max_window)
        self._readings: Dict[str, List[SignalReading]] = {}

    @property
    def max_window(self) -> int:
        return self._max_window

    def push(self, peer_id: str, signal: float, timestamp: Optional[float] = None) -> None:
        if timestamp is None:
            timestamp = time.time()
        window = self._readings.setdefault(peer_id, [])
        window.append(SignalReading(signal=clamp_quality(signal), timestamp=float(timestamp)))
        if len(window) > self._max_window:
            del window[: len(window) - self._max_window]

    def has_history(self, peer_id: str) -> bool:
        return bool(self._readings.get(peer_id))

    def readings(self, peer_id: str) -> List[int]:
        return [r.signal for r in self._readings.get(peer_id, [])]

    def smoothed(self, peer_id: str) -> int:
        return smooth(self.readings(peer_id), self._max_window)

    def forget(self, peer_id: str) -> None:
        self._readings.pop(peer_id, None)

    def clear(self) -> None:
        self._readings.clear()

    def peer_ids(self) -> List[str]:
        return list(self._readings.keys())

    # ------------------------------------------------------------
    # persistence helpers
    # ------------------------------------------------------------

    def to_dict(self) -> Dict[str, List[Dict[str, float]]]:
        return {
            peer_id: [{"signal": r.signal, "timestamp": r.timestamp} for r in window]
            for peer_id, window in self._readings.items()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object], max_window: int = DEFAULT_WINDOW) -> "SignalHistory":
        history = cls(max_window=max_window)
        for peer_id, entries in data.items():
            if not isinstance(entries, list):
                continue
            for entry in entries:
                if not isinstance(entry, dict) or "signal" not in entry:
                    continue
                try:
                    signal = float(entry["signal"])
                    timestamp = float(entry.get("timestamp", 0.0))
                except (TypeError, ValueError):
                    continue
                history.push(str(peer_id), signal, timestamp)
        return history
