"""Contracts for the external services the relay depends on."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Protocol, TypeVar

from .errors import CollaboratorError, CollaboratorTimeout, RelayError

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    """Verified user identity attached to a session."""

    identity_id: int
    display_name: str

    def to_public(self) -> dict[str, Any]:
        return {"id": self.identity_id, "display_name": self.display_name}


@dataclass(frozen=True, slots=True)
class MessageRecord:
    """A message as stored by the persistence service."""

    message_id: int
    room_id: int
    sender_id: int
    content: str
    message_type: str
    created_at: datetime
    sender: dict[str, Any] = field(default_factory=dict)

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.message_id,
            "conversation_id": self.room_id,
            "sender_id": self.sender_id,
            "sender": self.sender,
            "content": self.content,
            "message_type": self.message_type,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class CommentRecord:
    """A comment attached to a message."""

    comment_id: int
    message_id: int
    room_id: int
    sender_id: int
    content: str
    created_at: datetime
    sender: dict[str, Any] = field(default_factory=dict)

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.comment_id,
            "message_id": self.message_id,
            "conversation_id": self.room_id,
            "sender_id": self.sender_id,
            "sender": self.sender,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ReadReceipt:
    """Outcome of recording that a recipient has read a message."""

    message_id: int
    room_id: int
    sender_id: int
    identity_id: int
    first_read: bool = True


class IdentityDirectory(Protocol):
    """Resolves verified token subjects to user identities."""

    async def resolve(self, identity_id: int) -> Identity | None:
        """Return the identity or ``None`` when the user does not exist."""


class Persistence(Protocol):
    """Narrow view of the message store used by the relay."""

    async def is_participant(self, identity_id: int, room_id: int) -> bool:
        """Return whether the identity currently participates in the room."""

    async def create_message(
        self, room_id: int, sender_id: int, content: str, message_type: str
    ) -> MessageRecord:
        """Persist a new message and return the stored record."""

    async def message_room(self, message_id: int) -> int | None:
        """Return the room a message belongs to, or ``None`` if it does not exist."""

    async def create_comment(self, message_id: int, sender_id: int, content: str) -> CommentRecord:
        """Persist a comment on an existing message."""

    async def record_read(self, message_id: int, identity_id: int) -> ReadReceipt | None:
        """Record a read receipt, returning ``None`` when the message is unknown.

        ``first_read`` on the result is ``False`` when the reader had already
        read the message.
        """

    async def record_presence(
        self, identity_id: int, is_online: bool, last_seen: datetime | None
    ) -> None:
        """Store the latest presence transition; ``last_seen`` is set when going offline."""


async def bounded(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await a collaborator call, failing with :class:`CollaboratorTimeout` past *timeout*.

    Relay errors raised by the collaborator pass through unchanged; anything
    else is logged and reported as :class:`CollaboratorError`.
    """

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise CollaboratorTimeout(operation, timeout) from exc
    except RelayError:
        raise
    except Exception as exc:
        logger.exception("%s failed", operation)
        raise CollaboratorError(operation) from exc


__all__ = [
    "CommentRecord",
    "Identity",
    "IdentityDirectory",
    "MessageRecord",
    "Persistence",
    "ReadReceipt",
    "bounded",
]
