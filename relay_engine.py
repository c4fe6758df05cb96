"""
Relay engine: the store-and-carry message lifecycle.

Originator view of a message:    pending -> delivered
Carrier view of a message:       not carrying -> carrying -> delivered by me
                                                          -> expired

Every relay tick runs, in order:

1. expiry sweep of the carried-set (silent loss, no sender notification)
2. pending authored messages: direct delivery if the recipient is in
   range, else hand-off to the first in-range carrier
3. carried-set: deliver any entry whose recipient is in range

The engine keeps messages and the carried-set in memory and exposes
`state_for_flush()` so the caller can persist everything as the last
step of a tick. Authored messages are the exception: `send()` writes
them to the store before anything else happens.
"""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from crypto_layer import MeshObfuscator
from discovery import DiscoverySimulator
from mesh_config import RelayConfig
from relay_records import (
    CarriedMessage,
    DELIVERY_DELIVERED,
    DELIVERY_PENDING,
    Message,
    PeerObservation,
)
from relay_store import KEY_CARRIED, KEY_MESSAGES, RelayStore

LOG = logging.getLogger(__name__)


@dataclass
class RelayTickResult:
    expired: List[str] = field(default_factory=list)
    delivered_direct: List[str] = field(default_factory=list)
    handed_off: List[str] = field(default_factory=list)
    delivered_carried: List[Message] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.expired or self.delivered_direct or self.handed_off or self.delivered_carried)


@dataclass
class RelayStats:
    expired_total: int = 0
    delivered_direct_total: int = 0
    handed_off_total: int = 0
    delivered_carried_total: int = 0
    received_total: int = 0


class RelayEngine:
    """
    Owns authored/received messages and the local carried-set.

    Not thread-safe on its own; MeshManager serializes access with the
    same lock that guards the peer table.
    """

    def __init__(
        self,
        user_id: str,
        identity: str,
        store: RelayStore,
        discovery: DiscoverySimulator,
        obfuscator: MeshObfuscator,
        config: Optional[RelayConfig] = None,
    ) -> None:
        if not user_id:
            raise ValueError("user_id must not be empty")
        self._user_id = user_id
        self._identity = identity
        self._store = store
        self._discovery = discovery
        self._obfuscator = obfuscator
        self._config = config or RelayConfig()
        self.stats = RelayStats()

        self._messages: "OrderedDict[str, Message]" = OrderedDict()
        self._carried: "OrderedDict[str, CarriedMessage]" = OrderedDict()
        self.reload()

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def identity(self) -> str:
        return self._identity

    def reload(self) -> None:
        """Replace in-memory state with what the store holds."""
        self._messages = OrderedDict((m.id, m) for m in self._store.load_messages())
        self._carried = OrderedDict()
        for record in self._store.load_carried():
            if record.id in self._carried:
                LOG.warning("Duplicate carried message %s in store; keeping first", record.id)
                continue
            self._carried[record.id] = record

    def state_for_flush(self) -> Dict[str, Any]:
        return {
            KEY_MESSAGES: [m.to_dict() for m in self._messages.values()],
            KEY_CARRIED: [c.to_dict() for c in self._carried.values()],
        }

    def carried_count(self) -> int:
        return len(self._carried)

    def carried(self) -> List[CarriedMessage]:
        return [dataclasses.replace(c, relay_path=list(c.relay_path)) for c in self._carried.values()]

    def has_carried(self, message_id: str) -> bool:
        return message_id in self._carried

    def get_message(self, message_id: str) -> Optional[Message]:
        msg = self._messages.get(message_id)
        return dataclasses.replace(msg) if msg is not None else None

    def messages(self, conversation_id: Optional[str] = None) -> List[Message]:
        out = [
            dataclasses.replace(m)
            for m in self._messages.values()
            if conversation_id is None or m.conversation_id == conversation_id
        ]
        out.sort(key=lambda m: m.created_at)
        return out

    def pending_messages(self) -> List[Message]:
        return [
            dataclasses.replace(m)
            for m in self._messages.values()
            if m.sender_id == self._user_id and m.delivery_state == DELIVERY_PENDING
        ]

    def expires_at_for(self, created_at: float) -> float:
        return created_at + self._config.carry_ttl_seconds

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    def send(
        self,
        recipient_id: str,
        content: str,
        conversation_id: str,
        now: Optional[float] = None,
    ) -> Optional[str]:
        """
        Author a message. Returns the new message id, or None when the
        content is blank or the write-ahead to the store failed.
        """
        if not isinstance(content, str) or not content.strip():
            LOG.info("Rejected send with empty content")
            return None
        if not recipient_id:
            LOG.info("Rejected send without recipient")
            return None
        if now is None:
            now = time.time()

        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=self._user_id,
            recipient_id=recipient_id,
            content=content,
            created_at=float(now),
            delivery_state=DELIVERY_PENDING,
        )

        # Local durability precedes any relay attempt.
        try:
            self._store.add_message(message)
        except (sqlite3.Error, OSError):
            LOG.error("Could not persist message to %s; not sending", recipient_id, exc_info=True)
            return None

        self._messages[message.id] = message
        self._evaluate_pending(message, now, RelayTickResult())
        return message.id

    def receive(self, message: Message) -> Optional[Message]:
        """
        Record a message delivered to this user. Returns the stored copy
        for notification, or None if the id was already known.
        """
        if message.id in self._messages:
            return None
        received = dataclasses.replace(message, delivery_state=DELIVERY_DELIVERED)
        self._messages[received.id] = received
        self.stats.received_total += 1
        LOG.info("Received message %s from %s", received.id, received.sender_id)
        return dataclasses.replace(received)

    def receive_carried(self, carried: CarriedMessage) -> Optional[Message]:
        """A carrier reached us with a message addressed to this user."""
        if carried.recipient_id != self._user_id:
            raise ValueError("carried message is not addressed to this user")
        return self.receive(self._open_carried(carried))

    def accept_carried(self, carried: CarriedMessage, now: Optional[float] = None) -> bool:
        """
        Take over carrier duty for a message handed over by another peer.

        Idempotent by id. This peer's identity is appended to the relay
        path exactly once; expired records are refused.
        """
        if now is None:
            now = time.time()
        if carried.id in self._carried:
            return False
        if carried.is_expired(now):
            LOG.info("Refused expired carried message %s", carried.id)
            return False

        record = dataclasses.replace(
            carried,
            relay_path=list(carried.relay_path) + [self._identity],
            carrier_id=self._identity,
        )
        self._carried[record.id] = record
        LOG.info("Accepted carrier duty for %s (%d hop(s) so far)", record.id, len(record.relay_path))
        return True

    # ------------------------------------------------------------------
    # relay tick
    # ------------------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> RelayTickResult:
        if now is None:
            now = time.time()
        result = RelayTickResult()
        result.expired = self.expire(now)
        self.process_pending(now, result)
        self.process_carried(now, result)
        return result

    def expire(self, now: float) -> List[str]:
        """Drop carried entries past expires_at. The sender is not notified."""
        dead = [cid for cid, c in self._carried.items() if c.is_expired(now)]
        for cid in dead:
            del self._carried[cid]
            LOG.info("Carried message %s expired; dropped", cid)
        self.stats.expired_total += len(dead)
        return dead

    def process_pending(self, now: float, result: Optional[RelayTickResult] = None) -> RelayTickResult:
        if result is None:
            result = RelayTickResult()
        for message in list(self._messages.values()):
            if message.sender_id != self._user_id or message.delivery_state != DELIVERY_PENDING:
                continue
            try:
                self._evaluate_pending(message, now, result)
            except Exception:
                # Isolation boundary: one bad message cannot stall the tick.
                LOG.warning("Relay evaluation failed for message %s", message.id, exc_info=True)
                result.failed.append(message.id)
        return result

    def process_carried(self, now: float, result: Optional[RelayTickResult] = None) -> RelayTickResult:
        if result is None:
            result = RelayTickResult()
        for carried in list(self._carried.values()):
            if carried.is_expired(now):
                continue
            if not self._discovery.is_in_range(carried.recipient_id):
                continue
            try:
                delivered = self._deliver_carried(carried)
            except Exception:
                # Isolation boundary: one bad message cannot stall the tick.
                LOG.warning("Delivery failed for carried message %s", carried.id, exc_info=True)
                result.failed.append(carried.id)
                continue
            result.delivered_carried.append(delivered)
        return result

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _evaluate_pending(self, message: Message, now: float, result: RelayTickResult) -> None:
        if self._discovery.is_in_range(message.recipient_id):
            message.delivery_state = DELIVERY_DELIVERED
            self.stats.delivered_direct_total += 1
            result.delivered_direct.append(message.id)
            LOG.info("Direct delivery of %s to %s", message.id, message.recipient_id)
            return

        if message.id in self._carried:
            return

        carrier = self._select_carrier(message)
        if carrier is None:
            return

        record = CarriedMessage(
            id=message.id,
            encrypted_content=self._obfuscator.encrypt(message.content),
            sender_id=message.sender_id,
            recipient_id=message.recipient_id,
            conversation_id=message.conversation_id,
            created_at=message.created_at,
            expires_at=self.expires_at_for(message.created_at),
            relay_path=[self._identity],
            carrier_id=carrier.peer_id,
        )
        if record.is_expired(now):
            LOG.info("Message %s is older than the carry window; not handing off", message.id)
            return
        if self._insert_carried(record):
            self.stats.handed_off_total += 1
            result.handed_off.append(message.id)
            LOG.info("Handed off %s to carrier %s", message.id, carrier.peer_id)

    def _select_carrier(self, message: Message) -> Optional[PeerObservation]:
        """First in-range peer in peer-table order that is not an endpoint."""
        excluded = {message.sender_id, message.recipient_id, self._user_id, self._identity}
        for obs in self._discovery.in_range_peers():
            if obs.peer_id not in excluded:
                return obs
        return None

    def _insert_carried(self, record: CarriedMessage) -> bool:
        if record.id in self._carried:
            return False
        self._carried[record.id] = record
        return True

    def _open_carried(self, carried: CarriedMessage) -> Message:
        # Sole decryption point for relayed payloads.
        return Message(
            id=carried.id,
            conversation_id=carried.conversation_id,
            sender_id=carried.sender_id,
            recipient_id=carried.recipient_id,
            content=self._obfuscator.decrypt(carried.encrypted_content),
            created_at=carried.created_at,
            delivery_state=DELIVERY_DELIVERED,
        )

    def _deliver_carried(self, carried: CarriedMessage) -> Message:
        delivered = self._open_carried(carried)
        del self._carried[carried.id]
        self.stats.delivered_carried_total += 1
        LOG.info("Relayed %s via %d hop(s)", carried.id, len(carried.relay_path))
        return delivered
