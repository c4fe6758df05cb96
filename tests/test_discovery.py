# tests/test_discovery.py
"""Peer table maintenance: classification, stale decay, retention."""

import pytest

from discovery import DiscoverySimulator, SimulatedProximitySource
from mesh_config import DiscoveryConfig
from relay_records import Contact

from conftest import FakeProximitySource, T0


def _contacts(*peer_ids):
    return [Contact(peer_id=p, display_name=p.title(), username=p) for p in peer_ids]


@pytest.fixture
def discovery(source):
    return DiscoverySimulator(self_ids=["alice", "selfhex"], source=source, config=DiscoveryConfig())


class TestSimulatedProximitySource:

    def test_new_peer_reading_in_initial_band(self):
        src = SimulatedProximitySource(jitter=5, seed=7)
        for _ in range(200):
            assert 50 <= src.sample("bob", None) < 80

    def test_known_peer_stays_within_jitter_and_bounds(self):
        src = SimulatedProximitySource(jitter=5, seed=7)
        for _ in range(200):
            assert 55 <= src.sample("bob", 60) <= 65
            assert 0 <= src.sample("bob", 2) <= 7
            assert 94 <= src.sample("bob", 99) <= 100

    def test_seed_makes_runs_reproducible(self):
        a = SimulatedProximitySource(seed=42)
        b = SimulatedProximitySource(seed=42)
        assert [a.sample("x", 50) for _ in range(20)] == [b.sample("x", 50) for _ in range(20)]


class TestScan:

    def test_threshold_is_strictly_greater_than_20(self, discovery, source):
        source.set("bob", 20)
        source.set("carol", 21)
        discovery.scan(_contacts("bob", "carol"), now=T0)

        assert discovery.is_in_range("bob") is False
        assert discovery.is_in_range("carol") is True

    def test_own_ids_never_appear(self, discovery, source):
        source.set("alice", 90)
        source.set("selfhex", 90)
        observed = discovery.scan(_contacts("alice", "selfhex", "bob"), now=T0)

        assert [o.peer_id for o in observed] == ["bob"]
        assert discovery.get("alice") is None

    def test_observation_carries_distance_estimate(self, discovery, source):
        source.set("bob", 50)
        (obs,) = discovery.scan(_contacts("bob"), now=T0)
        assert obs.estimated_distance_m == 10
        assert obs.contact_ref == "bob"

    def test_first_scan_passes_no_baseline_then_smoothed(self, discovery, source):
        source.set("bob", 60)
        discovery.scan(_contacts("bob"), now=T0)
        discovery.scan(_contacts("bob"), now=T0 + 5)

        assert source.calls[0] == ("bob", None)
        assert source.calls[1] == ("bob", 60)

    def test_stale_peer_decays_by_10(self, discovery, source):
        source.set("bob", 60)
        discovery.scan(_contacts("bob"), now=T0)
        source.set("bob", 15)
        discovery.scan(_contacts("bob"), now=T0 + 5)
        last_seen = discovery.get("bob").last_seen

        source.set("bob", 25)
        (obs,) = discovery.scan(_contacts("bob"), now=T0 + 60)

        assert obs.signal_quality == 15
        assert obs.in_range is False
        assert obs.last_seen == last_seen

    def test_decay_floors_at_zero(self, discovery, source):
        source.set("bob", 30)
        discovery.scan(_contacts("bob"), now=T0)
        source.set("bob", 4)
        (obs,) = discovery.scan(_contacts("bob"), now=T0 + 45)
        assert obs.signal_quality == 0

    def test_recent_peer_not_decayed(self, discovery, source):
        source.set("bob", 60)
        discovery.scan(_contacts("bob"), now=T0)
        (obs,) = discovery.scan(_contacts("bob"), now=T0 + 30)
        assert obs.signal_quality == 60

    def test_last_seen_only_advances_while_in_range(self, discovery, source):
        source.set("bob", 10)
        discovery.scan(_contacts("bob"), now=T0)
        assert discovery.get("bob").last_seen == T0

        discovery.scan(_contacts("bob"), now=T0 + 5)
        assert discovery.get("bob").last_seen == T0

        source.set("bob", 70)
        discovery.scan(_contacts("bob"), now=T0 + 10)
        assert discovery.get("bob").last_seen == T0 + 10

    def test_out_of_range_peers_are_retained(self, discovery, source):
        source.set("bob", 70)
        discovery.scan(_contacts("bob"), now=T0)
        source.set("bob", 0)
        discovery.scan(_contacts("bob"), now=T0 + 5)

        assert [o.peer_id for o in discovery.snapshot()] == ["bob"]
        assert discovery.in_range_peers() == []

    def test_history_window_bounded(self, source):
        discovery = DiscoverySimulator(["alice"], source, DiscoveryConfig(smoothing_window=3))
        source.set("bob", 50)
        for i in range(6):
            discovery.scan(_contacts("bob"), now=T0 + i)
        assert len(discovery.history.readings("bob")) == 3

    def test_snapshot_is_a_copy(self, discovery, source):
        source.set("bob", 70)
        discovery.scan(_contacts("bob"), now=T0)
        discovery.snapshot()[0].in_range = False
        assert discovery.is_in_range("bob") is True


class TestAddDiscoveredPeer:

    def test_added_peer_is_classified(self, discovery):
        obs = discovery.add_discovered_peer("dave", 65, now=T0)
        assert obs.in_range is True
        assert discovery.history.readings("dave") == [65]

    def test_self_rejected(self, discovery):
        with pytest.raises(ValueError):
            discovery.add_discovered_peer("alice", 90, now=T0)

    def test_load_skips_self(self):
        source = FakeProximitySource()
        first = DiscoverySimulator(["alice"], source)
        first.add_discovered_peer("bob", 70, now=T0)
        persisted = first.snapshot()

        second = DiscoverySimulator(["bob"], source)
        second.load(persisted)
        assert second.snapshot() == []
