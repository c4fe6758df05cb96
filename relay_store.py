# relay_store.py

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from relay_records import (
    CarriedMessage,
    Contact,
    Message,
    PeerObservation,
)

LOG = logging.getLogger(__name__)

KEY_IDENTITY = "identity"
KEY_CONTACTS = "contacts"
KEY_MESSAGES = "messages"
KEY_CARRIED = "carried"
KEY_PEERS = "peers"
KEY_SIGNAL_HISTORY = "signal_history"

PEER_ID_BYTES = 8


class RelayStore:
    """
    Durable key-value store for the relay mesh, backed by SQLite.

    - One row per namespaced key (e.g. "relaymesh.carried").
    - Values are JSON: a string for the identity, arrays of objects for
      record families, an object for signal history.
    - A corrupt value reads as empty (logged) rather than failing the
      caller; sqlite3 errors propagate so ticks can skip and retry.
    """

    def __init__(self, db_path: str, key_prefix: str = "relaymesh") -> None:
        self._db_path = db_path
        self._prefix = key_prefix.strip().rstrip(".") or "relaymesh"
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def _init_schema(self) -> None:
        create_sql = """
        CREATE TABLE IF NOT EXISTS mesh_records (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_ts REAL NOT NULL
        );
        """
        with self._lock:
            self._conn.execute(create_sql)
            self._conn.commit()

    # ------------------------------------------------------------
    # raw key access
    # ------------------------------------------------------------

    def key_for(self, name: str) -> str:
        return f"{self._prefix}.{name}"

    def _read_json(self, name: str, default: Any) -> Any:
        with self._lock:
            cur = self._conn.execute(
                "SELECT value FROM mesh_records WHERE key = ? LIMIT 1;",
                (self.key_for(name),),
            )
            row = cur.fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            LOG.warning("Corrupt JSON under %s; treating as empty", self.key_for(name))
            return default

    def write_many(self, values: Dict[str, Any]) -> None:
        """Write several keys in one transaction."""
        if not values:
            return
        now = time.time()
        rows = [
            (self.key_for(name), json.dumps(value, ensure_ascii=False), now)
            for name, value in values.items()
        ]
        upsert_sql = """
        INSERT INTO mesh_records (key, value, updated_ts)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_ts = excluded.updated_ts;
        """
        with self._lock:
            try:
                self._conn.executemany(upsert_sql, rows)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

    def _write_json(self, name: str, value: Any) -> None:
        self.write_many({name: value})

    def _load_records(self, name: str, factory: Callable[[Dict[str, Any]], Any]) -> List[Any]:
        raw = self._read_json(name, [])
        if not isinstance(raw, list):
            LOG.warning("Expected a JSON array under %s; treating as empty", self.key_for(name))
            return []
        out: List[Any] = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                out.append(factory(entry))
            except (KeyError, ValueError, TypeError):
                LOG.warning("Skipping malformed record under %s: %r", self.key_for(name), entry)
        return out

    # ------------------------------------------------------------
    # identity
    # ------------------------------------------------------------

    def get_identity(self) -> Optional[str]:
        value = self._read_json(KEY_IDENTITY, None)
        if isinstance(value, str) and value:
            return value
        return None

    def get_or_create_identity(self) -> str:
        """Return the local peer id, generating and persisting it once."""
        with self._lock:
            existing = self.get_identity()
            if existing is not None:
                return existing
            peer_id = os.urandom(PEER_ID_BYTES).hex()
            self._write_json(KEY_IDENTITY, peer_id)
            LOG.info("Generated local peer identity %s", peer_id)
            return peer_id

    # ------------------------------------------------------------
    # contacts
    # ------------------------------------------------------------

    def load_contacts(self) -> List[Contact]:
        return self._load_records(KEY_CONTACTS, Contact.from_dict)

    def save_contacts(self, contacts: List[Contact]) -> None:
        self._write_json(KEY_CONTACTS, [c.to_dict() for c in contacts])

    def upsert_contact(self, contact: Contact, now: Optional[float] = None) -> Contact:
        """
        Insert or update a contact by peer_id.

        Display fields of an existing contact are replaced when the new
        value is non-empty; last_seen is always refreshed.
        """
        if now is None:
            now = time.time()
        with self._lock:
            contacts = self.load_contacts()
            for index, existing in enumerate(contacts):
                if existing.peer_id != contact.peer_id:
                    continue
                merged = Contact(
                    peer_id=existing.peer_id,
                    display_name=contact.display_name or existing.display_name,
                    username=contact.username or existing.username,
                    avatar_ref=contact.avatar_ref if contact.avatar_ref is not None else existing.avatar_ref,
                    last_seen=float(now),
                )
                contacts[index] = merged
                self.save_contacts(contacts)
                return merged

            created = Contact(
                peer_id=contact.peer_id,
                display_name=contact.display_name,
                username=contact.username,
                avatar_ref=contact.avatar_ref,
                last_seen=float(now),
            )
            contacts.append(created)
            self.save_contacts(contacts)
            return created

    def add_contact_if_missing(self, contact: Contact) -> bool:
        """Insert a contact as-is unless its peer_id is already known."""
        with self._lock:
            contacts = self.load_contacts()
            if any(c.peer_id == contact.peer_id for c in contacts):
                return False
            contacts.append(contact)
            self.save_contacts(contacts)
            return True

    def remove_contact(self, peer_id: str) -> bool:
        with self._lock:
            contacts = self.load_contacts()
            kept = [c for c in contacts if c.peer_id != peer_id]
            if len(kept) == len(contacts):
                return False
            self.save_contacts(kept)
            return True

    # ------------------------------------------------------------
    # messages
    # ------------------------------------------------------------

    def load_messages(self) -> List[Message]:
        return self._load_records(KEY_MESSAGES, Message.from_dict)

    def save_messages(self, messages: List[Message]) -> None:
        self._write_json(KEY_MESSAGES, [m.to_dict() for m in messages])

    def add_message(self, message: Message) -> bool:
        """
        Append a message, ignoring it if the id is already present.

        Returns True when a new row was stored.
        """
        with self._lock:
            messages = self.load_messages()
            if any(m.id == message.id for m in messages):
                return False
            messages.append(message)
            self.save_messages(messages)
        return True

    # ------------------------------------------------------------
    # carried messages / peer table / signal history
    # ------------------------------------------------------------

    def load_carried(self) -> List[CarriedMessage]:
        return self._load_records(KEY_CARRIED, CarriedMessage.from_dict)

    def load_peers(self) -> List[PeerObservation]:
        return self._load_records(KEY_PEERS, PeerObservation.from_dict)

    def load_signal_history(self) -> Dict[str, Any]:
        raw = self._read_json(KEY_SIGNAL_HISTORY, {})
        if not isinstance(raw, dict):
            return {}
        return raw

    # ------------------------------------------------------------
    # housekeeping
    # ------------------------------------------------------------

    def clear(self) -> None:
        """Remove every key under this store's prefix (identity included)."""
        head = f"{self._prefix}."
        with self._lock:
            self._conn.execute(
                "DELETE FROM mesh_records WHERE substr(key, 1, ?) = ?;",
                (len(head), head),
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
