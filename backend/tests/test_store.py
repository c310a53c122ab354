from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from app.models import ConversationParticipant, Message, MessageRead, User
from app.store import SqlIdentityDirectory, SqlPersistence
from parley.realtime import UnknownMessage


@pytest.fixture()
def store(session_factory) -> SqlPersistence:
    return SqlPersistence(session_factory)


@pytest.mark.anyio("asyncio")
async def test_resolve_uses_display_name(session_factory, seeded) -> None:
    directory = SqlIdentityDirectory(session_factory)

    alice = await directory.resolve(seeded["alice"])
    bob = await directory.resolve(seeded["bob"])

    assert alice is not None and alice.display_name == "Alice"
    assert bob is not None and bob.display_name == "bob"
    assert await directory.resolve(9999) is None


@pytest.mark.anyio("asyncio")
async def test_participation_ignores_departed_members(store, session_factory, seeded) -> None:
    assert await store.is_participant(seeded["alice"], seeded["room"])
    assert not await store.is_participant(seeded["mallory"], seeded["room"])

    with session_factory() as db:
        membership = db.execute(
            select(ConversationParticipant).where(ConversationParticipant.user_id == seeded["bob"])
        ).scalar_one()
        membership.left_at = datetime.now(timezone.utc)
        db.commit()

    assert not await store.is_participant(seeded["bob"], seeded["room"])


@pytest.mark.anyio("asyncio")
async def test_create_message_returns_sender_details(store, seeded) -> None:
    record = await store.create_message(seeded["room"], seeded["alice"], "hi", "text")

    assert record.room_id == seeded["room"]
    assert record.sender["display_name"] == "Alice"
    assert record.to_public()["message_type"] == "text"
    assert await store.message_room(record.message_id) == seeded["room"]


@pytest.mark.anyio("asyncio")
async def test_deleted_messages_have_no_room(store, session_factory, seeded) -> None:
    record = await store.create_message(seeded["room"], seeded["alice"], "oops", "text")
    with session_factory() as db:
        db.get(Message, record.message_id).is_deleted = True
        db.commit()

    assert await store.message_room(record.message_id) is None
    assert await store.message_room(4242) is None


@pytest.mark.anyio("asyncio")
async def test_create_comment_requires_message(store, seeded) -> None:
    message = await store.create_message(seeded["room"], seeded["alice"], "thread", "text")

    comment = await store.create_comment(message.message_id, seeded["bob"], "reply")

    assert comment.room_id == seeded["room"]
    assert comment.sender["username"] == "bob"
    with pytest.raises(UnknownMessage):
        await store.create_comment(4242, seeded["bob"], "lost")


@pytest.mark.anyio("asyncio")
async def test_record_read_is_idempotent(store, session_factory, seeded) -> None:
    message = await store.create_message(seeded["room"], seeded["alice"], "read me", "text")

    first = await store.record_read(message.message_id, seeded["bob"])
    second = await store.record_read(message.message_id, seeded["bob"])
    own = await store.record_read(message.message_id, seeded["alice"])

    assert first is not None and first.sender_id == seeded["alice"]
    assert first.first_read is True
    assert second is not None and second.first_read is False
    assert (second.message_id, second.room_id, second.sender_id) == (first.message_id, first.room_id, first.sender_id)
    assert own is not None and own.sender_id == seeded["alice"]
    assert await store.record_read(4242, seeded["bob"]) is None
    with session_factory() as db:
        reads = db.execute(select(MessageRead.user_id)).scalars().all()
    assert reads == [seeded["bob"]]


@pytest.mark.anyio("asyncio")
async def test_record_presence_updates_user(store, session_factory, seeded) -> None:
    seen = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    await store.record_presence(seeded["alice"], True, None)
    with session_factory() as db:
        assert db.get(User, seeded["alice"]).is_online is True

    await store.record_presence(seeded["alice"], False, seen)
    with session_factory() as db:
        user = db.get(User, seeded["alice"])
        assert user.is_online is False
        assert user.last_seen.replace(tzinfo=timezone.utc) == seen
