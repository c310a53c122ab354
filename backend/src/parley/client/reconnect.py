"""Client-side connection controller with automatic reconnect.

The relay never buffers events for a dropped connection. This controller is
the recovery path: it reconnects with bounded exponential backoff, re-joins
every room it was subscribed to, and fetches recent history for the active
room so the gap left by the outage is filled. Events carry a stable
``event_id``; the controller drops ones it has already dispatched so history
that overlaps with in-flight events is not shown twice.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import OrderedDict, defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None]]
HistoryFetcher = Callable[[int], Awaitable[list[dict[str, Any]]]]
Connector = Callable[[str], Awaitable[Any]]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


class NotConnectedError(RuntimeError):
    """Raised when a command needs a live connection and there is none."""


class CallbackHandle:
    """Registration handle returned by :meth:`ReconnectController.on`."""

    def __init__(self, registry: Dict[str, list[EventCallback]], event_type: str, callback: EventCallback) -> None:
        self._registry = registry
        self._event_type = event_type
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def remove(self) -> None:
        if not self._active:
            return
        callbacks = self._registry.get(self._event_type, [])
        if self._callback in callbacks:
            callbacks.remove(self._callback)
        self._active = False


class HttpHistoryClient:
    """Fetch the latest page of a conversation from the persistence service."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        limit: int = 50,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._limit = limit
        self._timeout = timeout
        self._transport = transport

    async def __call__(self, room_id: int) -> list[dict[str, Any]]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"Authorization": f"Bearer {self._token}"},
            transport=self._transport,
        ) as client:
            response = await client.get(
                f"/api/messages/conversation/{room_id}", params={"limit": self._limit}
            )
            response.raise_for_status()
            body = response.json()
        if isinstance(body, dict):
            return list(body.get("data", []))
        return list(body)


def _with_token(url: str, token: str) -> str:
    parts = urlsplit(url)
    query = f"{parts.query}&{urlencode({'token': token})}" if parts.query else urlencode({"token": token})
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class ReconnectController:
    """Keep a relay connection alive and restore its room subscriptions."""

    def __init__(
        self,
        url: str,
        token: str,
        *,
        history: HistoryFetcher | None = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        open_timeout: float = 10.0,
        dedup_window: int = 1000,
        connector: Connector | None = None,
    ) -> None:
        self._url = _with_token(url, token)
        self._history = history
        self._max_attempts = max(int(max_attempts), 1)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._open_timeout = open_timeout
        self._dedup_window = max(int(dedup_window), 1)
        self._connector = connector or self._default_connector
        self._state = ConnectionState.IDLE
        self._connection: Any | None = None
        self._reader: asyncio.Task[None] | None = None
        self._rooms: set[int] = set()
        self._active_room: int | None = None
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._callbacks: Dict[str, list[EventCallback]] = defaultdict(list)
        self.session_id: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def rooms(self) -> frozenset[int]:
        return frozenset(self._rooms)

    @property
    def active_room(self) -> int | None:
        return self._active_room

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number *attempt* (zero based)."""

        return min(self._base_delay * (2**attempt), self._max_delay)

    def on(self, event_type: str, callback: EventCallback) -> CallbackHandle:
        """Register *callback* for relay events of *event_type* (``"*"`` for all)."""

        self._callbacks[event_type].append(callback)
        return CallbackHandle(self._callbacks, event_type, callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return
        self._set_state(ConnectionState.CONNECTING)
        try:
            self._connection = await self._open()
        except (OSError, WebSocketException, asyncio.TimeoutError):
            self._set_state(ConnectionState.FAILED)
            raise
        self._set_state(ConnectionState.CONNECTED)
        self._reader = asyncio.create_task(self._run(), name="relay-client-reader")

    async def close(self) -> None:
        self._set_state(ConnectionState.CLOSED)
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        await self._close_connection()
        self._rooms.clear()
        self._active_room = None

    async def wait_closed(self) -> None:
        if self._reader is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def join_room(self, room_id: int, *, active: bool = True) -> None:
        self._rooms.add(room_id)
        if active:
            self._active_room = room_id
        if self._state is ConnectionState.CONNECTED:
            await self._send({"type": "join_room", "room_id": room_id})

    async def leave_room(self, room_id: int) -> None:
        self._rooms.discard(room_id)
        if self._active_room == room_id:
            self._active_room = None
        if self._state is ConnectionState.CONNECTED:
            await self._send({"type": "leave_room", "room_id": room_id})

    async def send_message(self, room_id: int, content: str, message_type: str = "text") -> None:
        await self._send(
            {"type": "send_message", "room_id": room_id, "content": content, "message_type": message_type}
        )

    async def send_comment(self, message_id: int, content: str) -> None:
        await self._send({"type": "send_comment", "message_id": message_id, "content": content})

    async def set_typing(self, room_id: int, is_typing: bool) -> None:
        await self._send({"type": "typing", "room_id": room_id, "is_typing": is_typing})

    async def mark_read(self, message_id: int) -> None:
        await self._send({"type": "mark_read", "message_id": message_id})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _default_connector(self, url: str) -> Any:
        return await websockets.connect(url, open_timeout=self._open_timeout)

    async def _open(self) -> Any:
        return await asyncio.wait_for(self._connector(self._url), timeout=self._open_timeout)

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._state is not ConnectionState.CONNECTED or self._connection is None:
            raise NotConnectedError(f"Cannot send '{payload.get('type')}' while {self._state.value}")
        await self._connection.send(json.dumps(payload))

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            with contextlib.suppress(Exception):
                await connection.close()

    async def _run(self) -> None:
        while True:
            try:
                async for raw in self._connection:
                    await self._handle_raw(raw)
            except ConnectionClosed as exc:
                logger.info("Relay connection lost: %s", exc)
            except OSError:
                logger.info("Relay connection lost", exc_info=logger.isEnabledFor(logging.DEBUG))
            if self._state is ConnectionState.CLOSED:
                return
            if not await self._reconnect():
                return

    async def _reconnect(self) -> bool:
        await self._close_connection()
        self._set_state(ConnectionState.RECONNECTING)
        for attempt in range(self._max_attempts):
            delay = self.backoff_delay(attempt)
            logger.info("Reconnecting to relay in %.2fs (attempt %s/%s)", delay, attempt + 1, self._max_attempts)
            await asyncio.sleep(delay)
            if self._state is ConnectionState.CLOSED:
                return False
            try:
                self._connection = await self._open()
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                logger.warning("Reconnect attempt %s failed: %s", attempt + 1, exc)
                continue
            self._set_state(ConnectionState.CONNECTED)
            try:
                await self._resubscribe()
                await self._reconcile()
            except ConnectionClosed:
                logger.warning("Connection dropped while restoring subscriptions")
                await self._close_connection()
                self._set_state(ConnectionState.RECONNECTING)
                continue
            return True
        logger.error("Failed to reconnect to relay after %s attempts", self._max_attempts)
        self._set_state(ConnectionState.FAILED)
        return False

    async def _resubscribe(self) -> None:
        for room_id in sorted(self._rooms):
            await self._send({"type": "join_room", "room_id": room_id})

    async def _reconcile(self) -> None:
        if self._history is None or self._active_room is None:
            return
        room_id = self._active_room
        try:
            messages = await self._history(room_id)
        except Exception:
            logger.warning("History reconciliation for room %s failed", room_id, exc_info=True)
            return
        for message in messages or ():
            if not isinstance(message, dict) or message.get("id") is None:
                logger.warning("Skipped malformed history entry for room %s", room_id)
                continue
            await self._dispatch(
                {
                    "type": "message",
                    "event_id": f"message:{message['id']}",
                    "room_id": room_id,
                    "message": message,
                }
            )

    async def _handle_raw(self, raw: str | bytes) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarded malformed relay payload")
            return
        if not isinstance(payload, dict):
            return
        if payload.get("type") == "session":
            self.session_id = payload.get("session_id")
        elif payload.get("type") == "ping":
            await self._send({"type": "pong"})
            return
        await self._dispatch(payload)

    def _remember(self, event_id: str) -> bool:
        if event_id in self._seen:
            self._seen.move_to_end(event_id)
            return False
        self._seen[event_id] = None
        while len(self._seen) > self._dedup_window:
            self._seen.popitem(last=False)
        return True

    async def _dispatch(self, payload: dict[str, Any]) -> None:
        event_id = payload.get("event_id")
        if isinstance(event_id, str) and not self._remember(event_id):
            return
        event_type = str(payload.get("type", ""))
        for callback in [*self._callbacks.get(event_type, []), *self._callbacks.get("*", [])]:
            try:
                await callback(payload)
            except Exception:
                logger.exception("Relay event callback failed for %s", event_type)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        logger.debug("Relay connection state -> %s", state.value)
        for callback in list(self._callbacks.get("state", [])):
            task = asyncio.ensure_future(callback({"type": "state", "state": state.value}))
            task.add_done_callback(_log_callback_failure)


def _log_callback_failure(task: asyncio.Future[Any]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("State callback failed", exc_info=task.exception())


__all__ = [
    "CallbackHandle",
    "ConnectionState",
    "HttpHistoryClient",
    "NotConnectedError",
    "ReconnectController",
]
