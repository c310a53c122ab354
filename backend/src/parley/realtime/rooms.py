"""Conversation room membership for live sessions."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Dict, Set

from .collaborators import Persistence, bounded
from .errors import AuthzError, CollaboratorError, CollaboratorTimeout, UnknownSession
from .instrumentation import NULL_METRICS, RelayMetrics

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .sessions import Session


logger = logging.getLogger(__name__)


class RoomRegistry:
    """Track which sessions are subscribed to which conversation rooms."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        timeout: float = 3.0,
        metrics: RelayMetrics = NULL_METRICS,
    ) -> None:
        self._persistence = persistence
        self._timeout = timeout
        self._metrics = metrics
        # room id -> session id -> identity id
        self._members: Dict[int, Dict[str, int]] = defaultdict(dict)
        self._session_rooms: Dict[str, Set[int]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def join(self, session: "Session", room_id: int) -> bool:
        """Subscribe *session* to *room_id* after checking participation.

        Returns ``False`` when the session was already subscribed. Raises
        :class:`AuthzError` for non-participants, :class:`CollaboratorTimeout`
        when the participation check does not answer in time and
        :class:`CollaboratorError` when it fails. The session itself is left
        untouched.
        """

        if room_id in self._session_rooms.get(session.session_id, ()):
            return False

        try:
            allowed = await bounded(
                "participant lookup",
                self._persistence.is_participant(session.identity_id, room_id),
                self._timeout,
            )
        except CollaboratorTimeout:
            self._metrics.join_rejected("timeout")
            logger.warning(
                "Participant lookup timed out; denying join",
                extra={"room_id": room_id, "identity_id": session.identity_id},
            )
            raise
        except CollaboratorError:
            self._metrics.join_rejected("error")
            raise

        if not allowed:
            self._metrics.join_rejected("forbidden")
            logger.warning(
                "Rejected join from non-participant",
                extra={"room_id": room_id, "identity_id": session.identity_id},
            )
            raise AuthzError(room_id, session.identity_id)

        async with self._lock:
            # The session may have been dismissed while authorization was pending.
            if session.closed:
                raise UnknownSession(session.session_id)
            bucket = self._members[room_id]
            if session.session_id in bucket:
                return False
            bucket[session.session_id] = session.identity_id
            self._session_rooms[session.session_id].add(room_id)
        self._metrics.subscriptions_changed(1)
        logger.debug("Session %s joined room %s", session.session_id, room_id)
        return True

    async def leave(self, session_id: str, room_id: int) -> bool:
        async with self._lock:
            bucket = self._members.get(room_id)
            if not bucket or session_id not in bucket:
                return False
            bucket.pop(session_id, None)
            if not bucket:
                self._members.pop(room_id, None)
            rooms = self._session_rooms.get(session_id)
            if rooms is not None:
                rooms.discard(room_id)
                if not rooms:
                    self._session_rooms.pop(session_id, None)
        self._metrics.subscriptions_changed(-1)
        return True

    async def drop_session(self, session_id: str) -> frozenset[int]:
        """Remove every subscription held by *session_id* in one step."""

        async with self._lock:
            rooms = frozenset(self._session_rooms.pop(session_id, ()))
            for room_id in rooms:
                bucket = self._members.get(room_id)
                if bucket is None:
                    continue
                bucket.pop(session_id, None)
                if not bucket:
                    self._members.pop(room_id, None)
        if rooms:
            self._metrics.subscriptions_changed(-len(rooms))
        return rooms

    def subscribers(self, room_id: int) -> set[str]:
        return set(self._members.get(room_id, {}))

    def members(self, room_id: int) -> dict[str, int]:
        """Return a ``session id -> identity id`` snapshot for the room."""

        return dict(self._members.get(room_id, {}))

    def rooms_for(self, session_id: str) -> set[int]:
        return set(self._session_rooms.get(session_id, ()))

    def has_identity(self, room_id: int, identity_id: int) -> bool:
        return identity_id in self._members.get(room_id, {}).values()

    def is_subscribed(self, session_id: str, room_id: int) -> bool:
        return session_id in self._members.get(room_id, {})


__all__ = ["RoomRegistry"]
