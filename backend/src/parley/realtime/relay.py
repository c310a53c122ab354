"""Composition root wiring the relay components together."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass
from typing import Any

from fastapi.websockets import WebSocket, WebSocketState

from .broadcast import BroadcastPipeline, PublishReport
from .collaborators import CommentRecord, IdentityDirectory, MessageRecord, Persistence, bounded
from .delivery import DeliveryTracker
from .errors import AuthzError, CollaboratorTimeout, UnknownMessage, UnknownSession
from .events import (
    DeliveryState,
    Event,
    EventType,
    comment_event,
    delivery_state_event,
    message_event,
    room_updated_event,
)
from .identity import IdentityVerifier
from .instrumentation import NULL_METRICS, RelayMetrics
from .presence import PresenceTracker
from .rooms import RoomRegistry
from .sessions import ListenerHandle, Session, SessionRegistry
from .typing_indicators import TypingAggregator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Tunables for a relay instance."""

    secret_key: str
    algorithm: str = "HS256"
    presence_debounce_seconds: float = 5.0
    typing_ttl_seconds: float = 5.0
    typing_sweep_interval_seconds: float = 1.0
    collaborator_timeout_seconds: float = 3.0
    send_timeout_seconds: float = 5.0
    delivery_capacity: int = 10_000


class Relay:
    """A relay instance with an explicit start/stop lifecycle.

    Client connections call :meth:`connect` and the command methods; REST
    handlers call :meth:`publish` and :meth:`notify_delivery_state` after a
    write has completed in the persistence service.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        persistence: Persistence,
        directory: IdentityDirectory,
        metrics: RelayMetrics = NULL_METRICS,
    ) -> None:
        timeout = config.collaborator_timeout_seconds
        self.config = config
        self._persistence = persistence
        self._timeout = timeout
        self.verifier = IdentityVerifier(
            directory, secret_key=config.secret_key, algorithm=config.algorithm, timeout=timeout
        )
        self.rooms = RoomRegistry(persistence, timeout=timeout, metrics=metrics)
        self.sessions = SessionRegistry(self.rooms, send_timeout=config.send_timeout_seconds, metrics=metrics)
        self.broadcast = BroadcastPipeline(self.sessions, self.rooms)
        self.presence = PresenceTracker(
            self.sessions,
            self.broadcast,
            debounce_seconds=config.presence_debounce_seconds,
            persistence=persistence,
            timeout=timeout,
            metrics=metrics,
        )
        self.typing = TypingAggregator(
            self.broadcast,
            self.rooms,
            ttl_seconds=config.typing_ttl_seconds,
            sweep_interval=config.typing_sweep_interval_seconds,
        )
        self.delivery = DeliveryTracker(capacity=config.delivery_capacity)
        self._sequence = itertools.count(1)
        self._handles: list[ListenerHandle] = []
        self._late_writes: set[asyncio.Task[None]] = set()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._handles = [
            self.sessions.add_listener(self.presence),
            self.sessions.add_listener(self.typing),
        ]
        await self.typing.start()
        self._started = True
        logger.info("Relay started")

    async def stop(self) -> None:
        if not self._started:
            return
        for task in list(self._late_writes):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.sessions.close_all()
        await self.presence.stop()
        await self.typing.stop()
        for handle in self._handles:
            handle.remove()
        self._handles.clear()
        self._started = False
        logger.info("Relay stopped")

    # ------------------------------------------------------------------
    # Client surface
    # ------------------------------------------------------------------
    async def connect(self, credential: str, connection: WebSocket) -> Session:
        """Verify *credential* and admit the connection as a new session.

        Raises :class:`~parley.realtime.errors.AuthError`,
        :class:`~parley.realtime.errors.CollaboratorTimeout` or
        :class:`~parley.realtime.errors.CollaboratorError` before any session
        exists.
        """

        identity = await self.verifier.verify(credential)
        if connection.application_state == WebSocketState.CONNECTING:
            await connection.accept()
        return await self.sessions.admit(identity, connection, welcome=self._welcome)

    def _welcome(self, session: Session) -> list[dict[str, Any]]:
        return [
            {
                "type": "session",
                "session_id": session.session_id,
                "identity": session.identity.to_public(),
            },
            {"type": "presence_snapshot", "users": self.presence.snapshot()},
        ]

    async def disconnect(self, session_id: str) -> bool:
        return await self.sessions.dismiss(session_id)

    async def join_room(self, session_id: str, room_id: int) -> bool:
        return await self.rooms.join(self._session(session_id), room_id)

    async def leave_room(self, session_id: str, room_id: int) -> bool:
        session = self._session(session_id)
        left = await self.rooms.leave(session_id, room_id)
        if left and not self.rooms.has_identity(room_id, session.identity_id):
            await self.typing.clear(room_id, session.identity_id)
        return left

    async def send_message(
        self, session_id: str, room_id: int, content: str, message_type: str = "text"
    ) -> MessageRecord:
        """Store a message and fan it out to the room.

        When the write outlives the collaborator timeout the caller gets
        :class:`~parley.realtime.errors.CollaboratorTimeout`, but the write is
        left running. If it commits later the message is relayed then, to the
        sender's sessions as well, so clients see it landed before retrying.
        """

        session = self._session(session_id)
        await self._authorize(session, room_id)
        write = asyncio.ensure_future(
            self._persistence.create_message(room_id, session.identity_id, content, message_type)
        )
        try:
            record = await bounded("create message", asyncio.shield(write), self._timeout)
        except CollaboratorTimeout:
            task = asyncio.create_task(self._relay_late_write(write), name=f"late-message-{room_id}")
            self._late_writes.add(task)
            task.add_done_callback(self._late_writes.discard)
            raise
        await self._announce_message(record, exclude_session=session_id)
        return record

    async def send_comment(self, session_id: str, message_id: int, content: str) -> CommentRecord:
        session = self._session(session_id)
        room_id = await self._message_room(message_id)
        await self._authorize(session, room_id)
        record = await bounded(
            "create comment",
            self._persistence.create_comment(message_id, session.identity_id, content),
            self._timeout,
        )
        await self.broadcast.publish(record.room_id, comment_event(record), exclude_session=session_id)
        return record

    async def set_typing(self, session_id: str, room_id: int, is_typing: bool) -> bool:
        session = self._session(session_id)
        if not self.rooms.is_subscribed(session_id, room_id):
            raise AuthzError(room_id, session.identity_id)
        return await self.typing.set_typing(room_id, session.identity, is_typing)

    async def mark_read(self, session_id: str, message_id: int) -> bool:
        session = self._session(session_id)
        room_id = await self._message_room(message_id)
        await self._authorize(session, room_id)
        receipt = await bounded(
            "record read",
            self._persistence.record_read(message_id, session.identity_id),
            self._timeout,
        )
        if receipt is None:
            raise UnknownMessage(message_id)
        if receipt.sender_id == session.identity_id or not receipt.first_read:
            return False
        self.delivery.record_sent(message_id, room_id=receipt.room_id, sender_id=receipt.sender_id)
        if not self.delivery.advance(
            message_id, DeliveryState.READ, room_id=receipt.room_id, identity_id=session.identity_id
        ):
            return False
        await self.broadcast.publish(
            receipt.room_id,
            delivery_state_event(
                message_id, DeliveryState.READ, receipt.room_id, identity_id=session.identity_id
            ),
        )
        return True

    # ------------------------------------------------------------------
    # Collaborator surface
    # ------------------------------------------------------------------
    async def publish(
        self, room_id: int, event: Event, *, origin_identity: int | None = None
    ) -> PublishReport:
        """Fan an event out to the room, skipping the originating identity."""

        if event.type is EventType.MESSAGE and event.message_id is not None:
            self.delivery.record_sent(event.message_id, room_id=room_id, sender_id=origin_identity)
            report = await self.broadcast.publish(room_id, event, exclude_identity=origin_identity)
            await self._mark_delivered(event.message_id, room_id, origin_identity, report)
            return report
        return await self.broadcast.publish(room_id, event, exclude_identity=origin_identity)

    def build_event(self, room_id: int, event_type: EventType, data: dict[str, Any]) -> Event:
        """Build an envelope for a payload handed over by a REST handler."""

        if event_type is EventType.MESSAGE:
            message_id = int(data["id"])
            return Event(EventType.MESSAGE, f"message:{message_id}", {"message": data}, room_id, message_id)
        if event_type is EventType.COMMENT:
            comment_id = int(data["id"])
            message_id = data.get("message_id")
            return Event(
                EventType.COMMENT,
                f"comment:{comment_id}",
                {"comment": data},
                room_id,
                int(message_id) if message_id is not None else None,
            )
        if event_type is EventType.ROOM_UPDATED:
            return room_updated_event(room_id, data, sequence=next(self._sequence))
        raise ValueError(f"Events of type '{event_type.value}' cannot be published externally")

    async def notify_delivery_state(
        self, message_id: int, state: DeliveryState | str, room_id: int | None = None
    ) -> bool:
        """Advance a message's delivery state, broadcasting forward transitions only."""

        state = DeliveryState(state)
        if not self.delivery.advance(message_id, state, room_id=room_id):
            return False
        entry = self.delivery.get(message_id)
        target_room = room_id if room_id is not None else (entry.room_id if entry else None)
        event = delivery_state_event(message_id, state, target_room)
        if target_room is None:
            await self.broadcast.publish_global(event)
        else:
            await self.broadcast.publish(target_room, event)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _session(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None or session.closed:
            raise UnknownSession(session_id)
        return session

    async def _authorize(self, session: Session, room_id: int) -> None:
        if self.rooms.is_subscribed(session.session_id, room_id):
            return
        allowed = await bounded(
            "participant lookup",
            self._persistence.is_participant(session.identity_id, room_id),
            self._timeout,
        )
        if not allowed:
            raise AuthzError(room_id, session.identity_id)

    async def _message_room(self, message_id: int) -> int:
        room_id = await bounded(
            "message lookup", self._persistence.message_room(message_id), self._timeout
        )
        if room_id is None:
            raise UnknownMessage(message_id)
        return room_id

    async def _announce_message(self, record: MessageRecord, *, exclude_session: str | None) -> None:
        await self.typing.clear(record.room_id, record.sender_id)
        await self._relay_message(record, exclude_session=exclude_session)
        await self.broadcast.publish(
            record.room_id,
            room_updated_event(
                record.room_id,
                {"id": record.room_id, "last_message": record.to_public()},
                sequence=next(self._sequence),
            ),
        )

    async def _relay_late_write(self, write: "asyncio.Future[MessageRecord]") -> None:
        try:
            record = await write
        except Exception:
            logger.exception("Message write failed after timing out")
            return
        logger.warning("Message %s was stored after its write timed out; relaying it now", record.message_id)
        await self._announce_message(record, exclude_session=None)

    async def _relay_message(self, record: MessageRecord, *, exclude_session: str | None) -> None:
        self.delivery.record_sent(record.message_id, room_id=record.room_id, sender_id=record.sender_id)
        report = await self.broadcast.publish(
            record.room_id, message_event(record), exclude_session=exclude_session
        )
        await self.broadcast.publish(
            record.room_id, delivery_state_event(record.message_id, DeliveryState.SENT, record.room_id)
        )
        await self._mark_delivered(record.message_id, record.room_id, record.sender_id, report)

    async def _mark_delivered(
        self, message_id: int, room_id: int, sender_id: int | None, report: PublishReport
    ) -> None:
        recipients = report.delivered_identities - {sender_id}
        if not recipients:
            return
        if self.delivery.advance(message_id, DeliveryState.DELIVERED, room_id=room_id):
            await self.broadcast.publish(
                room_id, delivery_state_event(message_id, DeliveryState.DELIVERED, room_id)
            )


__all__ = ["Relay", "RelayConfig"]
