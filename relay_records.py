"""
Record types shared by the discovery simulator, the relay engine and the
persistent store.

Each record round-trips through a plain dict (JSON object) so the store
can keep one JSON array per record family. Unknown keys are ignored on
load and missing optional keys fall back to defaults, which keeps older
stores readable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

DELIVERY_PENDING = "pending"
DELIVERY_DELIVERED = "delivered"
DELIVERY_STATES = (DELIVERY_PENDING, DELIVERY_DELIVERED)

_whitespace_re = re.compile(r"\s+")


def username_from_display_name(display_name: str) -> str:
    return _whitespace_re.sub("_", display_name.strip().lower())


def _require(data: Dict[str, Any], key: str) -> Any:
    if key not in data:
        raise KeyError(f"Missing required record field: {key}")
    return data[key]


@dataclass
class Contact:
    peer_id: str
    display_name: str
    username: str
    avatar_ref: Optional[str] = None
    last_seen: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contact":
        display_name = str(data.get("display_name", "") or "")
        username = str(data.get("username", "") or "") or username_from_display_name(display_name)
        avatar = data.get("avatar_ref")
        return cls(
            peer_id=str(_require(data, "peer_id")),
            display_name=display_name,
            username=username,
            avatar_ref=str(avatar) if avatar is not None else None,
            last_seen=float(data.get("last_seen", 0.0) or 0.0),
        )


@dataclass
class PeerObservation:
    """A nearby (or formerly nearby) peer as last seen by discovery."""

    peer_id: str
    contact_ref: str
    signal_quality: int
    in_range: bool
    last_seen: float
    estimated_distance_m: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerObservation":
        peer_id = str(_require(data, "peer_id"))
        return cls(
            peer_id=peer_id,
            contact_ref=str(data.get("contact_ref", peer_id) or peer_id),
            signal_quality=int(data.get("signal_quality", 0) or 0),
            in_range=bool(data.get("in_range", False)),
            last_seen=float(data.get("last_seen", 0.0) or 0.0),
            estimated_distance_m=int(data.get("estimated_distance_m", -1)),
        )


@dataclass
class Message:
    id: str
    conversation_id: str
    sender_id: str
    recipient_id: str
    content: str
    created_at: float
    delivery_state: str = DELIVERY_PENDING

    @property
    def is_delivered(self) -> bool:
        return self.delivery_state == DELIVERY_DELIVERED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        state = str(data.get("delivery_state", DELIVERY_PENDING) or DELIVERY_PENDING).lower()
        if state not in DELIVERY_STATES:
            raise ValueError(f"Unknown delivery_state: {state!r}")
        return cls(
            id=str(_require(data, "id")),
            conversation_id=str(data.get("conversation_id", "") or ""),
            sender_id=str(_require(data, "sender_id")),
            recipient_id=str(_require(data, "recipient_id")),
            content=str(data.get("content", "")),
            created_at=float(_require(data, "created_at")),
            delivery_state=state,
        )


@dataclass
class CarriedMessage:
    """A message this peer transports for someone else.

    `carrier_id` records which in-range peer the hand-off was made to and
    is informational only.
    """

    id: str
    encrypted_content: str
    sender_id: str
    recipient_id: str
    conversation_id: str
    created_at: float
    expires_at: float
    relay_path: List[str] = field(default_factory=list)
    carrier_id: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["relay_path"] = list(self.relay_path)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CarriedMessage":
        path_any = data.get("relay_path", [])
        if not isinstance(path_any, list):
            raise ValueError("relay_path must be a list")
        carrier = data.get("carrier_id")
        return cls(
            id=str(_require(data, "id")),
            encrypted_content=str(data.get("encrypted_content", "")),
            sender_id=str(_require(data, "sender_id")),
            recipient_id=str(_require(data, "recipient_id")),
            conversation_id=str(data.get("conversation_id", "") or ""),
            created_at=float(_require(data, "created_at")),
            expires_at=float(_require(data, "expires_at")),
            relay_path=[str(p) for p in path_any],
            carrier_id=str(carrier) if carrier is not None else None,
        )
