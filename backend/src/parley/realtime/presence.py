"""Online/offline tracking derived from live session counts."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from .broadcast import BroadcastPipeline
from .collaborators import Persistence, bounded
from .errors import CollaboratorError, CollaboratorTimeout
from .events import presence_event
from .instrumentation import NULL_METRICS, RelayMetrics
from .sessions import Session, SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PresenceRecord:
    identity_id: int
    is_online: bool = False
    last_seen: datetime | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            "user_id": self.identity_id,
            "is_online": self.is_online,
            "last_seen": self.last_seen.isoformat() if self.last_seen is not None else None,
        }


class PresenceTracker:
    """Derive presence from the session registry and broadcast transitions.

    Coming online is announced as soon as the first session is admitted.
    Going offline waits ``debounce_seconds`` after the last session closes; a
    new session admitted inside that window cancels the pending transition
    and nothing is emitted.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        broadcast: BroadcastPipeline,
        *,
        debounce_seconds: float = 5.0,
        persistence: Persistence | None = None,
        timeout: float = 3.0,
        metrics: RelayMetrics = NULL_METRICS,
    ) -> None:
        self._sessions = sessions
        self._broadcast = broadcast
        self._debounce = max(float(debounce_seconds), 0.0)
        self._persistence = persistence
        self._timeout = timeout
        self._metrics = metrics
        self._records: Dict[int, PresenceRecord] = {}
        self._pending: Dict[int, asyncio.Task[None]] = {}
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()
        self._commit_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def debounce_seconds(self) -> float:
        return self._debounce

    def is_online(self, identity_id: int) -> bool:
        record = self._records.get(identity_id)
        return bool(record and record.is_online)

    def get(self, identity_id: int) -> PresenceRecord | None:
        return self._records.get(identity_id)

    def snapshot(self) -> list[dict[str, Any]]:
        return [record.to_public() for _, record in sorted(self._records.items())]

    def has_pending_offline(self, identity_id: int) -> bool:
        return identity_id in self._pending

    # ------------------------------------------------------------------
    # Session listener
    # ------------------------------------------------------------------
    async def session_admitted(self, session: Session) -> None:
        identity_id = session.identity_id
        pending = self._pending.pop(identity_id, None)
        if pending is not None:
            pending.cancel()
            logger.debug("Cancelled pending offline transition for %s", identity_id)
        async with self._lock:
            record = self._records.setdefault(identity_id, PresenceRecord(identity_id))
            if record.is_online:
                return
            record.is_online = True
            transition = self._transition(record)
        await self._commit(*transition)

    async def session_dismissed(self, session: Session, rooms: frozenset[int]) -> None:
        identity_id = session.identity_id
        if self._sessions.session_count(identity_id) > 0 or identity_id in self._pending:
            return
        if self._debounce <= 0:
            await self._go_offline(identity_id)
            return
        self._pending[identity_id] = asyncio.create_task(
            self._debounced_offline(identity_id), name=f"presence-offline-{identity_id}"
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def _debounced_offline(self, identity_id: int) -> None:
        await asyncio.sleep(self._debounce)
        if self._pending.get(identity_id) is asyncio.current_task():
            self._pending.pop(identity_id, None)
        await self._go_offline(identity_id)

    async def _go_offline(self, identity_id: int) -> None:
        async with self._lock:
            if self._sessions.session_count(identity_id) > 0:
                return
            record = self._records.get(identity_id)
            if record is None or not record.is_online:
                return
            record.is_online = False
            record.last_seen = datetime.now(timezone.utc)
            transition = self._transition(record)
        await self._commit(*transition)

    def _transition(self, record: PresenceRecord) -> tuple[int, bool, datetime | None, int]:
        return record.identity_id, record.is_online, record.last_seen, next(self._sequence)

    def _commit_lock(self, identity_id: int) -> asyncio.Lock:
        lock = self._commit_locks.get(identity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._commit_locks[identity_id] = lock
        return lock

    async def _commit(
        self, identity_id: int, is_online: bool, last_seen: datetime | None, sequence: int
    ) -> None:
        # Store and announce one transition at a time per identity, in the
        # order the transitions were taken.
        state = "online" if is_online else "offline"
        self._metrics.presence_transition(state)
        logger.info("User %s is now %s", identity_id, state)
        async with self._commit_lock(identity_id):
            await self._store(identity_id, is_online, last_seen)
            event = presence_event(identity_id, is_online, last_seen, sequence=sequence)
            await self._broadcast.publish_global(event)

    async def _store(self, identity_id: int, is_online: bool, last_seen: datetime | None) -> None:
        if self._persistence is None:
            return
        try:
            await bounded(
                "presence update",
                self._persistence.record_presence(identity_id, is_online, last_seen),
                self._timeout,
            )
        except CollaboratorTimeout:
            logger.warning("Timed out storing presence for user %s", identity_id)
        except CollaboratorError:
            logger.warning("Could not store presence for user %s", identity_id)

    async def stop(self) -> None:
        """Cancel debounce timers and settle their identities offline immediately."""

        pending = list(self._pending.items())
        self._pending.clear()
        for identity_id, task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await self._go_offline(identity_id)


__all__ = ["PresenceRecord", "PresenceTracker"]
