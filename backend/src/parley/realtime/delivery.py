"""Monotone sent/delivered/read bookkeeping for recently relayed messages."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field

from .events import DeliveryState


@dataclass(slots=True)
class MessageDelivery:
    message_id: int
    state: DeliveryState
    room_id: int | None = None
    sender_id: int | None = None
    read_by: set[int] = field(default_factory=set)


class DeliveryTracker:
    """Keep the furthest delivery state reached by each message.

    States only move forward (``sent`` -> ``delivered`` -> ``read``) and a
    recipient's read flag is never cleared. Durable receipts live with the
    persistence service, so only the most recent ``capacity`` messages are
    remembered in full. Evicted messages leave their last state behind so a
    late update cannot move them backwards; their per-reader flags are gone.
    """

    def __init__(self, *, capacity: int = 10_000) -> None:
        self._capacity = max(int(capacity), 1)
        self._messages: "OrderedDict[int, MessageDelivery]" = OrderedDict()
        self._retired: "OrderedDict[int, DeliveryState]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: int) -> MessageDelivery | None:
        return self._messages.get(message_id)

    def state(self, message_id: int) -> DeliveryState | None:
        entry = self._messages.get(message_id)
        if entry is not None:
            return entry.state
        return self._retired.get(message_id)

    def has_read(self, message_id: int, identity_id: int) -> bool:
        entry = self._messages.get(message_id)
        return entry is not None and identity_id in entry.read_by

    def record_sent(self, message_id: int, *, room_id: int | None, sender_id: int | None) -> bool:
        """Register a freshly created message; returns ``False`` if already known."""

        entry = self._revive(message_id, room_id)
        if entry is not None:
            entry.room_id = entry.room_id if entry.room_id is not None else room_id
            entry.sender_id = entry.sender_id if entry.sender_id is not None else sender_id
            return False
        self._store(MessageDelivery(message_id, DeliveryState.SENT, room_id, sender_id))
        return True

    def advance(
        self,
        message_id: int,
        state: DeliveryState,
        *,
        room_id: int | None = None,
        identity_id: int | None = None,
    ) -> bool:
        """Move *message_id* forward to *state*; returns whether anything changed.

        When *identity_id* is given together with ``read`` the recipient's
        receipt is recorded as well, so a second reader still counts as a
        change even though the message is already ``read``.
        """

        state = DeliveryState(state)
        entry = self._revive(message_id, room_id)
        changed = False
        if entry is None:
            entry = MessageDelivery(message_id, state, room_id)
            self._store(entry)
            changed = True
        elif state.rank > entry.state.rank:
            entry.state = state
            changed = True
        if entry.room_id is None:
            entry.room_id = room_id
        if state is DeliveryState.READ and identity_id is not None and identity_id not in entry.read_by:
            entry.read_by.add(identity_id)
            changed = True
        return changed

    def _revive(self, message_id: int, room_id: int | None) -> MessageDelivery | None:
        entry = self._messages.get(message_id)
        if entry is not None:
            self._messages.move_to_end(message_id)
            return entry
        retired = self._retired.pop(message_id, None)
        if retired is None:
            return None
        entry = MessageDelivery(message_id, retired, room_id)
        self._store(entry)
        return entry

    def _store(self, entry: MessageDelivery) -> None:
        self._messages[entry.message_id] = entry
        self._messages.move_to_end(entry.message_id)
        while len(self._messages) > self._capacity:
            _, evicted = self._messages.popitem(last=False)
            self._retired[evicted.message_id] = evicted.state
        while len(self._retired) > self._capacity:
            self._retired.popitem(last=False)


__all__ = ["DeliveryTracker", "MessageDelivery"]
