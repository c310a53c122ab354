"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import asyncio
import itertools
import sys
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterator

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.main import app
from app.models import Base, Conversation, ConversationParticipant, User
from app.monitoring.metrics import RegistryRelayMetrics
from app.store import SqlIdentityDirectory, SqlPersistence
from parley.realtime import (
    CommentRecord,
    Identity,
    MessageRecord,
    ReadReceipt,
    Relay,
    RelayConfig,
    Session as RelaySession,
    create_access_token,
)

SECRET_KEY = "test-secret"


class DummyWebSocket:
    """Stand-in for a client connection that records every frame pushed to it."""

    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []
        self.fail = fail
        self.delay = delay
        self.closed = False

    async def accept(self) -> None:
        self.application_state = WebSocketState.CONNECTED

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(payload)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = True
        self.application_state = WebSocketState.DISCONNECTED

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for payload in self.sent if payload.get("type") == event_type]


class MemoryDirectory:
    def __init__(self) -> None:
        self.identities: dict[int, Identity] = {}
        self.delay = 0.0

    def add(self, identity_id: int, display_name: str) -> Identity:
        identity = Identity(identity_id, display_name)
        self.identities[identity_id] = identity
        return identity

    async def resolve(self, identity_id: int) -> Identity | None:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.identities.get(identity_id)


class MemoryPersistence:
    """In-memory conversation store with programmable delays and failures."""

    def __init__(self) -> None:
        self.participants: dict[int, set[int]] = defaultdict(set)
        self.messages: dict[int, MessageRecord] = {}
        self.comments: dict[int, CommentRecord] = {}
        self.reads: set[tuple[int, int]] = set()
        self.presence: list[tuple[int, bool, datetime | None]] = []
        self.participant_checks: list[tuple[int, int]] = []
        self.delay = 0.0
        self.delays: dict[str, float] = {}
        self.room_delays: dict[int, float] = {}
        self.presence_delays: dict[bool, float] = {}
        self.failures: dict[str, Exception] = {}
        self._ids = itertools.count(100)

    def add_participants(self, room_id: int, *identity_ids: int) -> None:
        self.participants[room_id].update(identity_ids)

    def add_message(self, room_id: int, sender_id: int, content: str = "hello") -> MessageRecord:
        record = MessageRecord(
            message_id=next(self._ids),
            room_id=room_id,
            sender_id=sender_id,
            content=content,
            message_type="text",
            created_at=datetime.now(timezone.utc),
            sender={"id": sender_id},
        )
        self.messages[record.message_id] = record
        return record

    async def _pause(self, operation: str = "", delay: float | None = None) -> None:
        if delay is None:
            delay = self.delays.get(operation, self.delay)
        if delay:
            await asyncio.sleep(delay)
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    async def is_participant(self, identity_id: int, room_id: int) -> bool:
        self.participant_checks.append((identity_id, room_id))
        await self._pause("is_participant", self.room_delays.get(room_id))
        return identity_id in self.participants.get(room_id, set())

    async def create_message(
        self, room_id: int, sender_id: int, content: str, message_type: str
    ) -> MessageRecord:
        await self._pause("create_message")
        record = self.add_message(room_id, sender_id, content)
        return record

    async def message_room(self, message_id: int) -> int | None:
        await self._pause("message_room")
        record = self.messages.get(message_id)
        return record.room_id if record is not None else None

    async def create_comment(self, message_id: int, sender_id: int, content: str) -> CommentRecord:
        await self._pause("create_comment")
        message = self.messages[message_id]
        record = CommentRecord(
            comment_id=next(self._ids),
            message_id=message_id,
            room_id=message.room_id,
            sender_id=sender_id,
            content=content,
            created_at=datetime.now(timezone.utc),
            sender={"id": sender_id},
        )
        self.comments[record.comment_id] = record
        return record

    async def record_read(self, message_id: int, identity_id: int) -> ReadReceipt | None:
        await self._pause("record_read")
        message = self.messages.get(message_id)
        if message is None:
            return None
        first_read = (message_id, identity_id) not in self.reads
        if identity_id != message.sender_id:
            self.reads.add((message_id, identity_id))
        return ReadReceipt(message_id, message.room_id, message.sender_id, identity_id, first_read)

    async def record_presence(self, identity_id: int, is_online: bool, last_seen: datetime | None) -> None:
        await self._pause("record_presence", self.presence_delays.get(is_online, 0.0))
        self.presence.append((identity_id, is_online, last_seen))


class RelayHarness:
    """Builds relays over the in-memory collaborators and connects fake clients."""

    def __init__(self, persistence: MemoryPersistence, directory: MemoryDirectory) -> None:
        self.persistence = persistence
        self.directory = directory

    def build(self, **overrides: Any) -> Relay:
        options: dict[str, Any] = {
            "presence_debounce_seconds": 0.2,
            "typing_ttl_seconds": 0.2,
            "typing_sweep_interval_seconds": 0.05,
            "collaborator_timeout_seconds": 0.2,
            "send_timeout_seconds": 0.2,
        }
        options.update(overrides)
        return Relay(
            RelayConfig(secret_key=SECRET_KEY, **options),
            persistence=self.persistence,
            directory=self.directory,
        )

    @asynccontextmanager
    async def running(self, **overrides: Any) -> AsyncIterator[Relay]:
        relay = self.build(**overrides)
        await relay.start()
        try:
            yield relay
        finally:
            await relay.stop()

    def token(self, identity_id: int) -> str:
        return create_access_token(identity_id, SECRET_KEY)

    async def connect(
        self, relay: Relay, identity_id: int, websocket: DummyWebSocket | None = None
    ) -> tuple[RelaySession, DummyWebSocket]:
        websocket = websocket or DummyWebSocket()
        session = await relay.connect(self.token(identity_id), websocket)  # type: ignore[arg-type]
        return session, websocket


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def persistence() -> MemoryPersistence:
    store = MemoryPersistence()
    store.add_participants(7, 1, 2)
    return store


@pytest.fixture()
def directory() -> MemoryDirectory:
    users = MemoryDirectory()
    users.add(1, "Alice")
    users.add(2, "Bob")
    users.add(3, "Carol")
    return users


@pytest.fixture()
def harness(persistence, directory) -> RelayHarness:
    return RelayHarness(persistence, directory)


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seeded(session_factory) -> dict[str, int]:
    """Create two participants of a group conversation and one outsider."""

    with session_factory() as db:
        alice = User(username="alice", email="alice@example.com", first_name="Alice")
        bob = User(username="bob", email="bob@example.com")
        mallory = User(username="mallory", email="mallory@example.com")
        conversation = Conversation(name="general")
        db.add_all([alice, bob, mallory, conversation])
        db.flush()
        db.add_all(
            [
                ConversationParticipant(conversation_id=conversation.id, user_id=alice.id),
                ConversationParticipant(conversation_id=conversation.id, user_id=bob.id),
            ]
        )
        db.commit()
        return {
            "alice": alice.id,
            "bob": bob.id,
            "mallory": mallory.id,
            "room": conversation.id,
        }


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a TestClient whose relay is backed by the test database."""

    relay = Relay(
        RelayConfig(
            secret_key=SECRET_KEY,
            presence_debounce_seconds=0.05,
            typing_ttl_seconds=1.0,
            collaborator_timeout_seconds=2.0,
            send_timeout_seconds=2.0,
        ),
        persistence=SqlPersistence(session_factory),
        directory=SqlIdentityDirectory(session_factory),
        metrics=RegistryRelayMetrics(),
    )
    app.state.relay = relay
    with TestClient(app) as test_client:
        yield test_client
    app.state.relay = None
