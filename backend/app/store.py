"""SQLAlchemy adapters implementing the relay's collaborator contracts."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.database import get_db_session
from app.models import Comment, Conversation, ConversationParticipant, Message, MessageRead, MessageType, User
from parley.realtime import CommentRecord, Identity, MessageRecord, ReadReceipt, UnknownMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _serialize_sender(user: User | None) -> dict[str, Any]:
    if user is None:
        return {}
    return {
        "id": user.id,
        "username": user.username,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
    }


def _touch_conversation(conversation_id: int, db: Session) -> None:
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(updated_at=datetime.now(timezone.utc))
    )


class _SessionScoped:
    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self._session_factory = session_factory

    def _run(self, fn: Callable[..., T], *args: Any) -> T:
        with get_db_session(self._session_factory) as db:
            return fn(db, *args)

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking ORM function with a short-lived session off the event loop."""

        return await run_in_threadpool(self._run, fn, *args)


class SqlIdentityDirectory(_SessionScoped):
    """Resolve token subjects against the ``users`` table."""

    async def resolve(self, identity_id: int) -> Identity | None:
        return await self._call(self._resolve, identity_id)

    @staticmethod
    def _resolve(db: Session, identity_id: int) -> Identity | None:
        user = db.get(User, identity_id)
        if user is None:
            return None
        return Identity(identity_id=user.id, display_name=user.display_name)


class SqlPersistence(_SessionScoped):
    """Narrow read/write access to conversations, messages and receipts."""

    async def is_participant(self, identity_id: int, room_id: int) -> bool:
        return await self._call(self._is_participant, identity_id, room_id)

    async def create_message(
        self, room_id: int, sender_id: int, content: str, message_type: str
    ) -> MessageRecord:
        return await self._call(self._create_message, room_id, sender_id, content, message_type)

    async def message_room(self, message_id: int) -> int | None:
        return await self._call(self._message_room, message_id)

    async def create_comment(self, message_id: int, sender_id: int, content: str) -> CommentRecord:
        return await self._call(self._create_comment, message_id, sender_id, content)

    async def record_read(self, message_id: int, identity_id: int) -> ReadReceipt | None:
        return await self._call(self._record_read, message_id, identity_id)

    async def record_presence(
        self, identity_id: int, is_online: bool, last_seen: datetime | None
    ) -> None:
        await self._call(self._record_presence, identity_id, is_online, last_seen)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------
    @staticmethod
    def _is_participant(db: Session, identity_id: int, room_id: int) -> bool:
        stmt = select(ConversationParticipant.id).where(
            ConversationParticipant.conversation_id == room_id,
            ConversationParticipant.user_id == identity_id,
            ConversationParticipant.left_at.is_(None),
        )
        return db.execute(stmt).scalar_one_or_none() is not None

    @staticmethod
    def _create_message(
        db: Session, room_id: int, sender_id: int, content: str, message_type: str
    ) -> MessageRecord:
        message = Message(
            conversation_id=room_id,
            sender_id=sender_id,
            content=content,
            message_type=MessageType(message_type),
        )
        db.add(message)
        _touch_conversation(room_id, db)
        db.commit()
        db.refresh(message)
        return MessageRecord(
            message_id=message.id,
            room_id=message.conversation_id,
            sender_id=message.sender_id,
            content=message.content,
            message_type=message.message_type.value,
            created_at=message.created_at,
            sender=_serialize_sender(message.sender),
        )

    @staticmethod
    def _message_room(db: Session, message_id: int) -> int | None:
        stmt = select(Message.conversation_id).where(
            Message.id == message_id, Message.is_deleted.is_(False)
        )
        return db.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _create_comment(db: Session, message_id: int, sender_id: int, content: str) -> CommentRecord:
        message = db.get(Message, message_id)
        if message is None:
            raise UnknownMessage(message_id)
        comment = Comment(message_id=message_id, sender_id=sender_id, content=content)
        db.add(comment)
        _touch_conversation(message.conversation_id, db)
        db.commit()
        db.refresh(comment)
        return CommentRecord(
            comment_id=comment.id,
            message_id=comment.message_id,
            room_id=message.conversation_id,
            sender_id=comment.sender_id,
            content=comment.content,
            created_at=comment.created_at,
            sender=_serialize_sender(comment.sender),
        )

    @staticmethod
    def _record_read(db: Session, message_id: int, identity_id: int) -> ReadReceipt | None:
        message = db.get(Message, message_id)
        if message is None:
            return None
        receipt = ReadReceipt(
            message_id=message.id,
            room_id=message.conversation_id,
            sender_id=message.sender_id,
            identity_id=identity_id,
        )
        if message.sender_id == identity_id:
            return receipt
        existing = db.execute(
            select(MessageRead.id).where(
                MessageRead.message_id == message_id, MessageRead.user_id == identity_id
            )
        ).scalar_one_or_none()
        if existing is not None:
            return replace(receipt, first_read=False)
        db.add(MessageRead(message_id=message_id, user_id=identity_id))
        try:
            db.commit()
        except IntegrityError:
            # Concurrent read from another device already stored the receipt.
            db.rollback()
            return replace(receipt, first_read=False)
        return receipt

    @staticmethod
    def _record_presence(
        db: Session, identity_id: int, is_online: bool, last_seen: datetime | None
    ) -> None:
        values: dict[str, Any] = {"is_online": is_online}
        if last_seen is not None:
            values["last_seen"] = last_seen
        db.execute(update(User).where(User.id == identity_id).values(**values))
        db.commit()


__all__ = ["SqlIdentityDirectory", "SqlPersistence"]
