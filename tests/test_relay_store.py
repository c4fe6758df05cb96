# tests/test_relay_store.py
"""SQLite-backed record store: identity, contacts, messages, raw keys."""

import sqlite3

import pytest

from relay_records import (
    CarriedMessage,
    Contact,
    DELIVERY_PENDING,
    Message,
    PeerObservation,
    username_from_display_name,
)
from relay_store import KEY_CARRIED, KEY_MESSAGES, KEY_PEERS, RelayStore

from conftest import DAY, T0


def _message(msg_id="m1", created_at=T0):
    return Message(
        id=msg_id,
        conversation_id="conv-1",
        sender_id="alice",
        recipient_id="bob",
        content="hello",
        created_at=created_at,
        delivery_state=DELIVERY_PENDING,
    )


class TestIdentity:

    def test_identity_is_8_bytes_hex_and_stable_across_reopen(self, tmp_path):
        db = str(tmp_path / "mesh.db")
        first = RelayStore(db)
        peer_id = first.get_or_create_identity()
        first.close()

        second = RelayStore(db)
        try:
            assert second.get_or_create_identity() == peer_id
        finally:
            second.close()

        assert len(peer_id) == 16
        int(peer_id, 16)

    def test_clear_regenerates_identity(self, store):
        before = store.get_or_create_identity()
        store.clear()
        assert store.get_identity() is None
        assert store.get_or_create_identity() != before

    def test_prefixes_are_isolated(self, tmp_path):
        db = str(tmp_path / "shared.db")
        a = RelayStore(db, key_prefix="one")
        b = RelayStore(db, key_prefix="two")
        try:
            assert a.get_or_create_identity() != b.get_or_create_identity()
            a.clear()
            assert b.get_identity() is not None
            assert a.key_for(KEY_CARRIED) == "one.carried"
        finally:
            a.close()
            b.close()


class TestContacts:

    def test_upsert_creates_then_updates_display_fields(self, store):
        store.upsert_contact(Contact(peer_id="bob", display_name="Bob", username="bob"), now=T0)
        updated = store.upsert_contact(
            Contact(peer_id="bob", display_name="Bobby", username="", avatar_ref="img://b"),
            now=T0 + 60,
        )

        assert updated.display_name == "Bobby"
        assert updated.username == "bob"
        assert updated.avatar_ref == "img://b"
        assert updated.last_seen == T0 + 60
        assert len(store.load_contacts()) == 1

    def test_add_contact_if_missing_does_not_overwrite(self, store):
        assert store.add_contact_if_missing(Contact(peer_id="bob", display_name="Bob", username="bob"))
        assert not store.add_contact_if_missing(Contact(peer_id="bob", display_name="Other", username="x"))
        (contact,) = store.load_contacts()
        assert contact.display_name == "Bob"

    def test_remove_contact(self, store):
        store.upsert_contact(Contact(peer_id="bob", display_name="Bob", username="bob"))
        assert store.remove_contact("bob") is True
        assert store.remove_contact("bob") is False
        assert store.load_contacts() == []

    def test_username_derived_from_display_name(self):
        assert username_from_display_name("  Carol  Ann Smith ") == "carol_ann_smith"
        contact = Contact.from_dict({"peer_id": "c", "display_name": "Carol Smith"})
        assert contact.username == "carol_smith"


class TestMessages:

    def test_add_message_is_idempotent_by_id(self, store):
        assert store.add_message(_message()) is True
        assert store.add_message(_message()) is False
        assert len(store.load_messages()) == 1

    def test_messages_keep_insertion_order(self, store):
        store.add_message(_message("later", created_at=T0 + 10))
        store.add_message(_message("earlier", created_at=T0))
        assert [m.id for m in store.load_messages()] == ["later", "earlier"]


class TestRawRecords:

    def test_carried_and_peers_round_trip(self, store):
        carried = CarriedMessage(
            id="m1",
            encrypted_content="CwoCAgQ=",
            sender_id="alice",
            recipient_id="bob",
            conversation_id="conv-1",
            created_at=T0,
            expires_at=T0 + 7 * DAY,
            relay_path=["aa" * 8],
            carrier_id="carol",
        )
        peer = PeerObservation(
            peer_id="bob",
            contact_ref="bob",
            signal_quality=55,
            in_range=True,
            last_seen=T0,
            estimated_distance_m=9,
        )
        store.write_many({KEY_CARRIED: [carried.to_dict()], KEY_PEERS: [peer.to_dict()]})

        assert store.load_carried() == [carried]
        assert store.load_peers() == [peer]

    def test_corrupt_json_reads_as_empty(self, tmp_path):
        db = str(tmp_path / "corrupt.db")
        store = RelayStore(db)
        store.add_message(_message())
        store.close()

        conn = sqlite3.connect(db)
        conn.execute(
            "UPDATE mesh_records SET value = ? WHERE key = ?",
            ("{not json", f"relaymesh.{KEY_MESSAGES}"),
        )
        conn.commit()
        conn.close()

        reopened = RelayStore(db)
        try:
            assert reopened.load_messages() == []
        finally:
            reopened.close()

    def test_malformed_records_are_skipped(self, store):
        store.write_many({KEY_MESSAGES: [_message().to_dict(), {"id": "no-sender"}, "junk"]})
        assert [m.id for m in store.load_messages()] == ["m1"]

    def test_unknown_delivery_state_rejected(self):
        data = _message().to_dict()
        data["delivery_state"] = "teleported"
        with pytest.raises(ValueError):
            Message.from_dict(data)

