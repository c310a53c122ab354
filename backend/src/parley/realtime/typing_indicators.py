"""Short-lived "user is typing" indicators."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict

from .broadcast import BroadcastPipeline
from .collaborators import Identity
from .events import typing_event
from .rooms import RoomRegistry
from .sessions import Session

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _TypingEntry:
    identity: Identity
    expires_at: float


class TypingAggregator:
    """Track typing state per room with automatic expiry.

    State lives only in memory. An entry whose ``expires_at`` has passed is
    treated as absent everywhere: snapshots skip it, and the background sweep
    (or the next write touching the store) removes it and broadcasts the stop
    event.
    """

    def __init__(
        self,
        broadcast: BroadcastPipeline,
        rooms: RoomRegistry,
        *,
        ttl_seconds: float = 5.0,
        sweep_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._broadcast = broadcast
        self._rooms = rooms
        self._ttl = float(ttl_seconds)
        self._sweep_interval = max(float(sweep_interval), 0.01)
        self._clock = clock
        self._entries: Dict[int, Dict[int, _TypingEntry]] = defaultdict(dict)
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="typing-sweep")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        async with self._lock:
            self._entries.clear()

    async def set_typing(self, room_id: int, identity: Identity, is_typing: bool) -> bool:
        """Record a typing signal; returns whether a start/stop event was broadcast."""

        now = self._clock()
        started = stopped = False
        async with self._lock:
            expired = self._collect_expired(now)
            bucket = self._entries[room_id]
            entry = bucket.get(identity.identity_id)
            if is_typing:
                if entry is not None:
                    entry.expires_at = now + self._ttl
                else:
                    bucket[identity.identity_id] = _TypingEntry(identity, now + self._ttl)
                    started = True
            elif bucket.pop(identity.identity_id, None) is not None:
                stopped = True
            if not bucket:
                self._entries.pop(room_id, None)

        await self._announce_expired(expired)
        if started or stopped:
            await self._announce(room_id, identity, started)
        return started or stopped

    async def clear(self, room_id: int, identity_id: int) -> bool:
        async with self._lock:
            bucket = self._entries.get(room_id)
            entry = bucket.pop(identity_id, None) if bucket else None
            if bucket is not None and not bucket:
                self._entries.pop(room_id, None)
        if entry is None:
            return False
        await self._announce(room_id, entry.identity, False)
        return True

    def snapshot(self, room_id: int) -> list[dict[str, Any]]:
        now = self._clock()
        entries = [
            entry.identity.to_public()
            for entry in self._entries.get(room_id, {}).values()
            if entry.expires_at > now
        ]
        entries.sort(key=lambda item: str(item["display_name"]).lower())
        return entries

    def is_typing(self, room_id: int, identity_id: int) -> bool:
        entry = self._entries.get(room_id, {}).get(identity_id)
        return entry is not None and entry.expires_at > self._clock()

    async def sweep(self) -> int:
        """Remove expired entries and broadcast their stop events."""

        async with self._lock:
            expired = self._collect_expired(self._clock())
        await self._announce_expired(expired)
        return len(expired)

    # ------------------------------------------------------------------
    # Session listener
    # ------------------------------------------------------------------
    async def session_admitted(self, session: Session) -> None:
        return None

    async def session_dismissed(self, session: Session, rooms: frozenset[int]) -> None:
        for room_id in rooms:
            if not self._rooms.has_identity(room_id, session.identity_id):
                await self.clear(room_id, session.identity_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _collect_expired(self, now: float) -> list[tuple[int, Identity]]:
        expired: list[tuple[int, Identity]] = []
        for room_id, bucket in list(self._entries.items()):
            for identity_id, entry in list(bucket.items()):
                if entry.expires_at <= now:
                    bucket.pop(identity_id, None)
                    expired.append((room_id, entry.identity))
            if not bucket:
                self._entries.pop(room_id, None)
        return expired

    async def _announce_expired(self, expired: list[tuple[int, Identity]]) -> None:
        for room_id, identity in expired:
            await self._announce(room_id, identity, False)

    async def _announce(self, room_id: int, identity: Identity, is_typing: bool) -> None:
        event = typing_event(room_id, identity, is_typing, sequence=next(self._sequence))
        await self._broadcast.publish(room_id, event, exclude_identity=identity.identity_id)

    def _next_wakeup(self) -> float:
        deadlines = [entry.expires_at for bucket in self._entries.values() for entry in bucket.values()]
        if not deadlines:
            return self._sweep_interval
        return min(self._sweep_interval, max(min(deadlines) - self._clock(), 0.01))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._next_wakeup())
            try:
                await self.sweep()
            except Exception:
                logger.exception("Typing sweep failed")


__all__ = ["TypingAggregator"]
