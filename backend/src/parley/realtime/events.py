"""Event envelopes pushed from the relay to connected clients."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .collaborators import CommentRecord, Identity, MessageRecord


class EventType(str, Enum):
    """Relay to client event names."""

    MESSAGE = "message"
    COMMENT = "comment"
    TYPING = "typing"
    PRESENCE = "presence"
    DELIVERY_STATE = "delivery_state"
    ROOM_UPDATED = "room_updated"


class DeliveryState(str, Enum):
    """Ordered progression of a message's delivery."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _DELIVERY_RANK[self]


_DELIVERY_RANK = {DeliveryState.SENT: 0, DeliveryState.DELIVERED: 1, DeliveryState.READ: 2}


@dataclass(frozen=True, slots=True)
class Event:
    """A single logical event fanned out to sessions.

    ``event_id`` is stable across retransmissions and history fetches so a
    receiving client can drop duplicates after a reconnect.
    """

    type: EventType
    event_id: str
    data: dict[str, Any] = field(default_factory=dict)
    room_id: int | None = None
    message_id: int | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value, "event_id": self.event_id}
        if self.room_id is not None:
            payload["room_id"] = self.room_id
        payload.update(self.data)
        return payload


def message_event(record: MessageRecord) -> Event:
    return Event(
        type=EventType.MESSAGE,
        event_id=f"message:{record.message_id}",
        room_id=record.room_id,
        message_id=record.message_id,
        data={"message": record.to_public()},
    )


def comment_event(record: CommentRecord) -> Event:
    return Event(
        type=EventType.COMMENT,
        event_id=f"comment:{record.comment_id}",
        room_id=record.room_id,
        message_id=record.message_id,
        data={"comment": record.to_public()},
    )


def typing_event(room_id: int, identity: Identity, is_typing: bool, *, sequence: int) -> Event:
    return Event(
        type=EventType.TYPING,
        event_id=f"typing:{room_id}:{identity.identity_id}:{sequence}",
        room_id=room_id,
        data={"user": identity.to_public(), "is_typing": is_typing},
    )


def presence_event(identity_id: int, is_online: bool, last_seen: datetime | None, *, sequence: int) -> Event:
    return Event(
        type=EventType.PRESENCE,
        event_id=f"presence:{identity_id}:{sequence}",
        data={
            "user_id": identity_id,
            "is_online": is_online,
            "last_seen": last_seen.isoformat() if last_seen is not None else None,
        },
    )


def delivery_state_event(
    message_id: int,
    state: DeliveryState,
    room_id: int | None,
    *,
    identity_id: int | None = None,
) -> Event:
    suffix = f":{identity_id}" if identity_id is not None else ""
    data: dict[str, Any] = {"message_id": message_id, "state": state.value}
    if identity_id is not None:
        data["user_id"] = identity_id
    return Event(
        type=EventType.DELIVERY_STATE,
        event_id=f"delivery_state:{message_id}:{state.value}{suffix}",
        room_id=room_id,
        message_id=message_id,
        data=data,
    )


def room_updated_event(room_id: int, metadata: dict[str, Any], *, sequence: int) -> Event:
    return Event(
        type=EventType.ROOM_UPDATED,
        event_id=f"room_updated:{room_id}:{sequence}",
        room_id=room_id,
        data={"conversation": metadata},
    )


__all__ = [
    "DeliveryState",
    "Event",
    "EventType",
    "comment_event",
    "delivery_state_event",
    "message_event",
    "presence_event",
    "room_updated_event",
    "typing_event",
]
