"""Registry of live client connections."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, Protocol, Set

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from .collaborators import Identity
from .errors import TransportError
from .events import Event
from .instrumentation import NULL_METRICS, RelayMetrics

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .rooms import RoomRegistry


logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class Session:
    """One live connection belonging to a verified identity."""

    session_id: str
    identity: Identity
    connection: WebSocket
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False

    @property
    def identity_id(self) -> int:
        return self.identity.identity_id


class SessionListener(Protocol):
    """Receives session lifecycle transitions from the registry."""

    async def session_admitted(self, session: Session) -> None:
        ...

    async def session_dismissed(self, session: Session, rooms: frozenset[int]) -> None:
        ...


class ListenerHandle:
    """Handle returned when registering a listener; ``remove()`` unregisters it."""

    def __init__(self, name: str, cleanup: Callable[[], None]) -> None:
        self._name = name
        self._cleanup: Callable[[], None] | None = cleanup

    @property
    def name(self) -> str:
        return self._name

    @property
    def active(self) -> bool:
        return self._cleanup is not None

    def remove(self) -> None:
        if self._cleanup is not None:
            self._cleanup()
            self._cleanup = None


async def _send(session: Session, payload: dict[str, Any], timeout: float) -> None:
    connection = session.connection
    if session.closed or connection.application_state != WebSocketState.CONNECTED:
        raise TransportError(session.session_id, "not_connected")
    try:
        await asyncio.wait_for(connection.send_json(payload), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransportError(session.session_id, "timeout") from exc
    except (WebSocketDisconnect, RuntimeError, OSError) as exc:
        raise TransportError(session.session_id, "send_failed") from exc


class SessionRegistry:
    """Own the set of live sessions, keyed by session id and by identity.

    An identity may hold any number of concurrent sessions (one per device).
    Dismissing a session removes its room subscriptions in the same step and
    notifies listeners so presence and typing state can follow.
    """

    def __init__(
        self,
        rooms: "RoomRegistry",
        *,
        send_timeout: float = 5.0,
        metrics: RelayMetrics = NULL_METRICS,
    ) -> None:
        self._rooms = rooms
        self._send_timeout = send_timeout
        self._metrics = metrics
        self._sessions: Dict[str, Session] = {}
        self._by_identity: Dict[int, Set[str]] = defaultdict(set)
        self._listeners: list[SessionListener] = []
        self._lock = asyncio.Lock()

    def add_listener(self, listener: SessionListener) -> ListenerHandle:
        self._listeners.append(listener)

        def cleanup() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return ListenerHandle(type(listener).__name__, cleanup)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def admit(
        self,
        identity: Identity,
        connection: WebSocket,
        *,
        welcome: Callable[[Session], Iterable[dict[str, Any]]] | None = None,
    ) -> Session:
        """Register a verified connection.

        Frames produced by *welcome* are pushed before the session becomes
        visible to fan-out, so they are always the first frames it receives.
        Raises :class:`TransportError` if the connection drops meanwhile.
        """

        session = Session(session_id=uuid.uuid4().hex, identity=identity, connection=connection)
        if welcome is not None:
            for frame in welcome(session):
                await _send(session, frame, self._send_timeout)
        async with self._lock:
            self._sessions[session.session_id] = session
            self._by_identity[identity.identity_id].add(session.session_id)
        self._metrics.session_opened()
        logger.info(
            "Session admitted",
            extra={"session_id": session.session_id, "identity_id": identity.identity_id},
        )
        await self._notify("session_admitted", session)
        return session

    async def dismiss(self, session_id: str, *, close_transport: bool = True) -> bool:
        """Remove *session_id*; repeated calls for the same session are no-ops."""

        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            transport_failed = session.closed
            session.closed = True
            bucket = self._by_identity.get(session.identity_id)
            if bucket is not None:
                bucket.discard(session_id)
                if not bucket:
                    self._by_identity.pop(session.identity_id, None)
        rooms = await self._rooms.drop_session(session_id)
        self._metrics.session_closed()
        logger.info(
            "Session dismissed",
            extra={"session_id": session_id, "identity_id": session.identity_id, "rooms": len(rooms)},
        )
        if (
            close_transport
            and not transport_failed
            and session.connection.application_state == WebSocketState.CONNECTED
        ):
            with contextlib.suppress(Exception):
                await asyncio.wait_for(session.connection.close(), timeout=self._send_timeout)
        await self._notify("session_dismissed", session, rooms)
        return True

    async def _notify(self, hook: str, *args: Any) -> None:
        for listener in list(self._listeners):
            callback: Callable[..., Awaitable[None]] = getattr(listener, hook)
            try:
                await callback(*args)
            except Exception:
                logger.exception("Session listener %s failed during %s", type(listener).__name__, hook)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions_for(self, identity_id: int) -> set[str]:
        return set(self._by_identity.get(identity_id, ()))

    def session_count(self, identity_id: int) -> int:
        return len(self._by_identity.get(identity_id, ()))

    def session_ids(self) -> set[str]:
        return set(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def send(self, session_id: str, payload: dict[str, Any]) -> bool:
        """Push *payload* to a session without dismissing it on failure.

        A failed send marks the session closed so later sends skip it; the
        caller is responsible for the follow-up :meth:`dismiss`.
        """

        session = self._sessions.get(session_id)
        if session is None or session.closed:
            return False
        try:
            await _send(session, payload, self._send_timeout)
        except TransportError as exc:
            session.closed = True
            self._metrics.delivery_failed(exc.reason)
            logger.debug("Delivery to session %s failed (%s)", session_id, exc.reason)
            return False
        self._metrics.event_delivered(str(payload.get("type", "unknown")))
        return True

    async def deliver(self, session_id: str, event: Event | dict[str, Any]) -> bool:
        """Push one event to a session, dismissing it when the transport fails.

        Failures are local to the session: there is no retry, the client is
        expected to reconnect and catch up from history.
        """

        payload = event.to_payload() if isinstance(event, Event) else event
        if await self.send(session_id, payload):
            return True
        await self.dismiss(session_id)
        return False

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.dismiss(session_id)


__all__ = ["ListenerHandle", "Session", "SessionListener", "SessionRegistry"]
