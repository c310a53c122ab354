"""Fan-out of logical events to subscribed sessions."""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field

from .events import Event
from .rooms import RoomRegistry
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PublishReport:
    """Outcome of a single fan-out."""

    event_id: str
    delivered: dict[str, int] = field(default_factory=dict)
    failed: set[str] = field(default_factory=set)

    @property
    def delivered_identities(self) -> set[int]:
        return set(self.delivered.values())


class BroadcastPipeline:
    """Deliver events to every subscriber of a room, one event at a time.

    Events published to the same room are delivered in publish order: the
    next event for a room starts only after every session has been attempted
    for the previous one. Different rooms proceed independently. Delivery is
    best effort; sessions whose transport fails are dismissed once the room's
    ordering lock has been released.
    """

    def __init__(self, sessions: SessionRegistry, rooms: RoomRegistry) -> None:
        self._sessions = sessions
        self._rooms = rooms
        self._room_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._global_lock = asyncio.Lock()

    def _room_lock(self, room_id: int) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._room_locks[room_id] = lock
        return lock

    async def publish(
        self,
        room_id: int,
        event: Event,
        *,
        exclude_session: str | None = None,
        exclude_identity: int | None = None,
    ) -> PublishReport:
        """Fan *event* out to the sessions subscribed to *room_id*.

        ``exclude_session`` skips the originating connection only, so the
        sender's other devices still receive the event. ``exclude_identity``
        skips every session of that identity.
        """

        lock = self._room_lock(room_id)
        async with lock:
            targets = {
                session_id: identity_id
                for session_id, identity_id in self._rooms.members(room_id).items()
                if session_id != exclude_session and identity_id != exclude_identity
            }
            report = await self._fan_out(event, targets)
        await self._reap(report)
        logger.debug(
            "Published %s to room %s",
            event.type.value,
            room_id,
            extra={"delivered": len(report.delivered), "failed": len(report.failed)},
        )
        return report

    async def publish_global(self, event: Event, *, exclude_identity: int | None = None) -> PublishReport:
        """Deliver *event* to every live session regardless of room."""

        async with self._global_lock:
            targets = {}
            for session_id in self._sessions.session_ids():
                session = self._sessions.get(session_id)
                if session is None or session.identity_id == exclude_identity:
                    continue
                targets[session_id] = session.identity_id
            report = await self._fan_out(event, targets)
        await self._reap(report)
        return report

    async def _fan_out(self, event: Event, targets: dict[str, int]) -> PublishReport:
        report = PublishReport(event_id=event.event_id)
        if not targets:
            return report
        payload = event.to_payload()
        session_ids = list(targets)
        results = await asyncio.gather(
            *(self._sessions.send(session_id, payload) for session_id in session_ids)
        )
        for session_id, ok in zip(session_ids, results):
            if ok:
                report.delivered[session_id] = targets[session_id]
            else:
                report.failed.add(session_id)
        return report

    async def _reap(self, report: PublishReport) -> None:
        for session_id in report.failed:
            await self._sessions.dismiss(session_id)


__all__ = ["BroadcastPipeline", "PublishReport"]
