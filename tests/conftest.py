# tests/conftest.py
from __future__ import annotations

from typing import Callable, Dict, Iterator, List, Optional

import pytest

from mesh_config import DiscoveryConfig, MeshManagerConfig, RelayConfig
from mesh_manager import MeshManager
from relay_records import Contact
from relay_store import RelayStore

DAY = 24 * 60 * 60
T0 = 1_700_000_000.0


class FakeProximitySource:
    """Deterministic source: returns whatever quality was set, ignoring baseline."""

    def __init__(self, qualities: Optional[Dict[str, int]] = None) -> None:
        self.qualities: Dict[str, int] = dict(qualities or {})
        self.calls: List[tuple] = []

    def set(self, peer_id: str, quality: int) -> None:
        self.qualities[peer_id] = quality

    def sample(self, peer_id: str, baseline: Optional[int]) -> int:
        self.calls.append((peer_id, baseline))
        return self.qualities.get(peer_id, 0)


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> FakeProximitySource:
    return FakeProximitySource()


@pytest.fixture
def store() -> Iterator[RelayStore]:
    s = RelayStore(":memory:")
    yield s
    s.close()


def add_contacts(store: RelayStore, *peer_ids: str) -> None:
    for peer_id in peer_ids:
        store.add_contact_if_missing(
            Contact(peer_id=peer_id, display_name=peer_id.title(), username=peer_id)
        )


@pytest.fixture
def make_manager(
    store: RelayStore,
    source: FakeProximitySource,
    clock: FakeClock,
) -> Iterator[Callable[..., MeshManager]]:
    """Build managers whose periodic threads effectively never fire."""
    created: List[MeshManager] = []

    def _make(
        user_id: str = "alice",
        discovery_interval: float = 3600.0,
        relay_interval: float = 3600.0,
        use_store: Optional[RelayStore] = None,
    ) -> MeshManager:
        config = MeshManagerConfig(
            user_id=user_id,
            discovery=DiscoveryConfig(interval_seconds=discovery_interval),
            relay=RelayConfig(interval_seconds=relay_interval),
        )
        manager = MeshManager(config, store=use_store or store, source=source, clock=clock)
        created.append(manager)
        return manager

    yield _make

    for manager in created:
        manager.stop()
