"""
Mesh manager:

- Wires the discovery simulator into the relay engine on two periodic
  threads (discovery every 5 s, relay every 3 s by default).
- Guards the peer table and carried-set with a single lock.
- Persists all state as the last step of every tick, then notifies
  observers and the event queue.
- Exposes start/stop and the query/send surface used by a UI layer.

There is no global instance. Callers own a MeshManager directly, or use
MeshSessionSlot to keep at most one session alive per process.
"""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Union

from crypto_layer import MeshObfuscator
from discovery import DiscoverySimulator, ProximitySource, SimulatedProximitySource
from mesh_config import MeshManagerConfig
from observers import ObserverRegistry
from relay_engine import RelayEngine, RelayTickResult
from relay_records import (
    CarriedMessage,
    Contact,
    Message,
    PeerObservation,
    username_from_display_name,
)
from relay_store import (
    KEY_CONTACTS,
    KEY_PEERS,
    KEY_SIGNAL_HISTORY,
    RelayStore,
)
from signal_model import SignalHistory

LOG = logging.getLogger(__name__)

STATE_STOPPED = "stopped"
STATE_STARTING = "starting"
STATE_RUNNING = "running"

UNKNOWN_SIGNAL = 0
UNKNOWN_DISTANCE = -1

# Storage failures are transient: the tick is skipped and retried.
_TRANSIENT_ERRORS = (sqlite3.Error, OSError)


# ============================================================
# Events (for queue consumers such as the daemon)
# ============================================================

@dataclass
class PeerListEvent:
    peers: List[PeerObservation]


@dataclass
class MessageDeliveredEvent:
    message: Message


@dataclass
class StatusEvent:
    text: str


MeshEvent = Union[PeerListEvent, MessageDeliveredEvent, StatusEvent]


# ============================================================
# MeshManager
# ============================================================

class MeshManager:
    """
    One relay session for one local user.

    Lifecycle: stopped -> starting -> running -> stopped.
    """

    def __init__(
        self,
        config: MeshManagerConfig,
        store: Optional[RelayStore] = None,
        source: Optional[ProximitySource] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not config.user_id:
            raise ValueError("config.user_id must not be empty")

        self._config = config
        self._clock = clock
        self._owns_store = store is None
        if store is None:
            store = RelayStore(config.storage.db_path, config.storage.key_prefix)
        self._store = store

        # Peer table + carried-set + message state share this lock.
        self._lock = threading.RLock()
        self._lifecycle_lock = threading.RLock()

        self._identity = self._store.get_or_create_identity()
        self._seed_contacts()

        disc_cfg = config.discovery
        history = SignalHistory.from_dict(self._store.load_signal_history(), disc_cfg.smoothing_window)
        if source is None:
            source = SimulatedProximitySource(jitter=disc_cfg.jitter, seed=disc_cfg.seed)
        self._discovery = DiscoverySimulator(
            self_ids=[config.user_id, self._identity],
            source=source,
            config=disc_cfg,
            history=history,
        )
        self._discovery.load(self._store.load_peers())
        # False once stop() has dropped the live table; flushes then leave
        # the persisted peer cache alone.
        self._peer_table_live = True

        self._engine = RelayEngine(
            user_id=config.user_id,
            identity=self._identity,
            store=self._store,
            discovery=self._discovery,
            obfuscator=MeshObfuscator(config.obfuscation),
            config=config.relay,
        )

        self._peer_observers = ObserverRegistry("peer-list")
        self._message_observers = ObserverRegistry("message-delivered")
        self._event_queue: queue.Queue[MeshEvent] = queue.Queue()

        # Deliveries whose persistence failed; announced after the next good flush.
        self._unannounced: List[Message] = []

        self._state = STATE_STOPPED
        self._stop_event = threading.Event()
        self._discovery_thread: Optional[threading.Thread] = None
        self._relay_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> str:
        return self._config.user_id

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == STATE_RUNNING

    def start(self) -> None:
        """
        Start the session: expiry cleanup, periodic threads, and one
        immediate discovery pass. No-op if already started.
        """
        with self._lifecycle_lock:
            if self._state != STATE_STOPPED:
                LOG.warning("MeshManager already running")
                return
            self._state = STATE_STARTING
            LOG.info("Starting mesh session for %s (peer id %s)", self.user_id, self._identity)

            self._stop_event.clear()
            with self._lock:
                if not self._peer_table_live:
                    self._discovery.load(self._store.load_peers())
                    self._peer_table_live = True
            self.cleanup_expired()

            self._discovery_thread = threading.Thread(
                target=self._periodic_loop,
                args=(self._config.discovery.interval_seconds, self.scan_once),
                name="mesh-discovery-loop",
                daemon=True,
            )
            self._relay_thread = threading.Thread(
                target=self._periodic_loop,
                args=(self._config.relay.interval_seconds, self.relay_once),
                name="mesh-relay-loop",
                daemon=True,
            )
            self._discovery_thread.start()
            self._relay_thread.start()
            self._state = STATE_RUNNING

            # First pass right away so observers do not wait a full interval.
            self._run_tick(self.scan_once)

        self._emit_status(f"Mesh session started for {self.user_id}")

    def stop(self) -> None:
        """
        Cancel both periodic threads (joined before returning) and clear
        the live peer table. Persisted data is untouched.
        """
        with self._lifecycle_lock:
            if self._state == STATE_STOPPED:
                return
            self._stop_event.set()
            threads = [t for t in (self._discovery_thread, self._relay_thread) if t is not None]
            self._discovery_thread = None
            self._relay_thread = None

        current = threading.current_thread()
        for t in threads:
            if t is not current:
                t.join()

        with self._lock:
            self._discovery.clear()
            self._peer_table_live = False

        with self._lifecycle_lock:
            self._state = STATE_STOPPED
        LOG.info("Mesh session for %s stopped", self.user_id)
        self._emit_status(f"Mesh session stopped for {self.user_id}")

    def close(self) -> None:
        """Stop and release the store if this manager opened it."""
        self.stop()
        if self._owns_store:
            self._store.close()

    def _periodic_loop(self, interval: float, tick: Callable[[], object]) -> None:
        while not self._stop_event.wait(interval):
            self._run_tick(tick)

    def _run_tick(self, tick: Callable[[], object]) -> None:
        try:
            tick()
        except Exception:
            # Isolation boundary: a failed tick is retried on the next interval.
            LOG.exception("Tick %s failed", getattr(tick, "__name__", repr(tick)))

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def scan_once(self) -> List[PeerObservation]:
        """Run one discovery pass; returns this tick's observations."""
        now = self._clock()
        try:
            with self._lock:
                contacts = self._store.load_contacts()
                observed = self._discovery.scan(contacts, now)
                in_range = {o.peer_id for o in observed if o.in_range}
                for contact in contacts:
                    if contact.peer_id in in_range:
                        contact.last_seen = now
                self._flush(contacts=contacts)
                snapshot = self._discovery.snapshot()
        except _TRANSIENT_ERRORS:
            LOG.warning("Discovery tick skipped: storage unavailable", exc_info=True)
            return []

        self._peer_observers.notify(snapshot)
        self._event_queue.put(PeerListEvent(peers=snapshot))
        return observed

    def relay_once(self) -> RelayTickResult:
        """Run one relay pass (expiry, pending, carried)."""
        now = self._clock()
        try:
            with self._lock:
                result = self._engine.tick(now)
                self._unannounced.extend(result.delivered_carried)
                self._flush()
                announce = self._unannounced
                self._unannounced = []
        except _TRANSIENT_ERRORS:
            LOG.warning("Relay tick skipped: storage unavailable", exc_info=True)
            return RelayTickResult()

        self._announce(announce)
        return result

    def cleanup_expired(self) -> List[str]:
        """Drop expired carried messages now (also done every relay tick)."""
        now = self._clock()
        try:
            with self._lock:
                expired = self._engine.expire(now)
                if expired:
                    self._flush()
        except _TRANSIENT_ERRORS:
            LOG.warning("Expiry cleanup skipped: storage unavailable", exc_info=True)
            return []
        return expired

    def _flush(self, contacts: Optional[List[Contact]] = None) -> None:
        values = self._engine.state_for_flush()
        if self._peer_table_live:
            values[KEY_PEERS] = [o.to_dict() for o in self._discovery.snapshot()]
        values[KEY_SIGNAL_HISTORY] = self._discovery.history.to_dict()
        if contacts is not None:
            values[KEY_CONTACTS] = [c.to_dict() for c in contacts]
        self._store.write_many(values)

    def _announce(self, messages: List[Message]) -> None:
        for msg in messages:
            self._message_observers.notify(replace(msg))
            self._event_queue.put(MessageDeliveredEvent(message=replace(msg)))

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send(self, recipient_id: str, content: str, conversation_id: str) -> Optional[str]:
        """
        Author a message to `recipient_id`. Returns the message id, or
        None if the content is blank or could not be stored.
        """
        now = self._clock()
        with self._lock:
            message_id = self._engine.send(recipient_id, content, conversation_id, now)
            if message_id is None:
                return None
            try:
                self._flush()
            except _TRANSIENT_ERRORS:
                # The message itself is already durable; relay state retries next tick.
                LOG.warning("Post-send flush failed for %s", message_id, exc_info=True)
        return message_id

    def receive(self, message: Message) -> bool:
        """Record a message handed directly to this user."""
        with self._lock:
            received = self._engine.receive(message)
        return self._record_received(received)

    def _record_received(self, received: Optional[Message]) -> bool:
        if received is None:
            return False
        with self._lock:
            self._unannounced.append(received)
            try:
                self._flush()
            except _TRANSIENT_ERRORS:
                LOG.warning("Flush after receive failed for %s", received.id, exc_info=True)
                return True
            announce = self._unannounced
            self._unannounced = []
        self._announce(announce)
        return True

    def accept_carried(self, carried: CarriedMessage) -> bool:
        """
        Take a carried message from another peer. Messages addressed to
        this user are received instead of queued.
        """
        if carried.recipient_id == self.user_id:
            with self._lock:
                received = self._engine.receive_carried(carried)
            return self._record_received(received)

        now = self._clock()
        with self._lock:
            accepted = self._engine.accept_carried(carried, now)
            if accepted:
                try:
                    self._flush()
                except _TRANSIENT_ERRORS:
                    LOG.warning("Flush after accepting %s failed", carried.id, exc_info=True)
        return accepted

    # ------------------------------------------------------------------
    # Contacts / peers
    # ------------------------------------------------------------------

    def _seed_contacts(self) -> None:
        for seed in self._config.contacts.values():
            if seed.peer_id in (self._config.user_id, self._identity):
                continue
            self._store.add_contact_if_missing(
                Contact(
                    peer_id=seed.peer_id,
                    display_name=seed.display_name,
                    username=seed.username or username_from_display_name(seed.display_name),
                    avatar_ref=seed.avatar_ref,
                    last_seen=0.0,
                )
            )

    def add_contact(
        self,
        peer_id: str,
        display_name: str,
        username: str = "",
        avatar_ref: Optional[str] = None,
    ) -> Contact:
        if not peer_id:
            raise ValueError("peer_id must not be empty")
        contact = Contact(
            peer_id=peer_id,
            display_name=display_name,
            username=username or username_from_display_name(display_name),
            avatar_ref=avatar_ref,
        )
        with self._lock:
            return self._store.upsert_contact(contact, now=self._clock())

    def remove_contact(self, peer_id: str) -> bool:
        with self._lock:
            return self._store.remove_contact(peer_id)

    def contacts(self) -> List[Contact]:
        return self._store.load_contacts()

    def add_discovered_peer(self, peer_id: str, display_name: str, signal_quality: float) -> PeerObservation:
        """Record a peer reported directly (e.g. manual pairing) and save it as a contact."""
        now = self._clock()
        with self._lock:
            obs = self._discovery.add_discovered_peer(peer_id, signal_quality, now)
            contact = self._store.upsert_contact(
                Contact(
                    peer_id=peer_id,
                    display_name=display_name,
                    username=username_from_display_name(display_name),
                ),
                now=now,
            )
            try:
                self._flush()
            except _TRANSIENT_ERRORS:
                LOG.warning("Flush after adding peer %s failed", peer_id, exc_info=True)
        LOG.info("Added discovered peer %s (%s) at quality %d", peer_id, contact.display_name, obs.signal_quality)
        return obs

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def own_identity(self) -> str:
        return self._identity

    def peers(self) -> List[PeerObservation]:
        with self._lock:
            return self._discovery.snapshot()

    def is_in_range(self, peer_id: str) -> bool:
        with self._lock:
            return self._discovery.is_in_range(peer_id)

    def signal_of(self, peer_id: str) -> int:
        with self._lock:
            obs = self._discovery.get(peer_id)
            return obs.signal_quality if obs is not None else UNKNOWN_SIGNAL

    def distance_of(self, peer_id: str) -> int:
        with self._lock:
            obs = self._discovery.get(peer_id)
            return obs.estimated_distance_m if obs is not None else UNKNOWN_DISTANCE

    def carried_count(self) -> int:
        with self._lock:
            return self._engine.carried_count()

    def carried_messages(self) -> List[CarriedMessage]:
        with self._lock:
            return self._engine.carried()

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            return self._engine.get_message(message_id)

    def messages(self, conversation_id: Optional[str] = None) -> List[Message]:
        with self._lock:
            return self._engine.messages(conversation_id)

    def pending_messages(self) -> List[Message]:
        with self._lock:
            return self._engine.pending_messages()

    def stats(self) -> Dict[str, object]:
        with self._lock:
            engine_stats = self._engine.stats
            return {
                "user_id": self.user_id,
                "identity": self._identity,
                "state": self._state,
                "peers_known": len(self._discovery.snapshot()),
                "peers_in_range": len(self._discovery.in_range_peers()),
                "carried": self._engine.carried_count(),
                "pending": len(self._engine.pending_messages()),
                "expired_total": engine_stats.expired_total,
                "delivered_direct_total": engine_stats.delivered_direct_total,
                "handed_off_total": engine_stats.handed_off_total,
                "delivered_carried_total": engine_stats.delivered_carried_total,
                "received_total": engine_stats.received_total,
            }

    # ------------------------------------------------------------------
    # Observers / events
    # ------------------------------------------------------------------

    def register_observer(self, cb: Callable[[List[PeerObservation]], None]) -> None:
        """cb(peers) after every discovery tick."""
        self._peer_observers.add(cb)

    def unregister_observer(self, cb: Callable[[List[PeerObservation]], None]) -> bool:
        return self._peer_observers.remove(cb)

    def register_message_observer(self, cb: Callable[[Message], None]) -> None:
        """cb(message) once per message newly delivered to this peer."""
        self._message_observers.add(cb)

    def unregister_message_observer(self, cb: Callable[[Message], None]) -> bool:
        return self._message_observers.remove(cb)

    def get_event_queue(self) -> queue.Queue[MeshEvent]:
        return self._event_queue

    def _emit_status(self, text: str) -> None:
        self._event_queue.put(StatusEvent(text=text))


# ============================================================
# Session slot
# ============================================================

class MeshSessionSlot:
    """
    Holds at most one MeshManager.

    Opening a session for a different user fully stops and discards the
    previous one first, so two sessions never share a peer table or
    carried-set.
    """

    def __init__(self, factory: Callable[[str], MeshManager]) -> None:
        self._factory = factory
        self._current: Optional[MeshManager] = None
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[MeshManager]:
        return self._current

    def open(self, user_id: str) -> MeshManager:
        with self._lock:
            if self._current is not None:
                if self._current.user_id == user_id:
                    return self._current
                LOG.info("Replacing mesh session %s with %s", self._current.user_id, user_id)
                self._current.close()
                self._current = None
            self._current = self._factory(user_id)
            return self._current

    def close(self) -> None:
        with self._lock:
            if self._current is not None:
                self._current.close()
                self._current = None
