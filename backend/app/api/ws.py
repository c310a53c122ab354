"""WebSocket endpoint carrying the relay protocol."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Annotated, Any, Dict, Literal, TypeVar, Union

from fastapi import APIRouter, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from app.config import get_settings
from parley.realtime import (
    AuthError,
    AuthzError,
    CollaboratorError,
    CollaboratorTimeout,
    Relay,
    RelayError,
    TransportError,
    UnknownMessage,
    UnknownSession,
)
from parley.realtime.instrumentation import RelayMetrics

router = APIRouter(tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")

MESSAGE_MAX_LENGTH = 5000


class JoinRoomCommand(BaseModel):
    type: Literal["join_room"]
    room_id: int = Field(gt=0)


class LeaveRoomCommand(BaseModel):
    type: Literal["leave_room"]
    room_id: int = Field(gt=0)


class SendMessageCommand(BaseModel):
    type: Literal["send_message"]
    room_id: int = Field(gt=0)
    content: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)
    message_type: Literal["text", "image", "file"] = "text"


class SendCommentCommand(BaseModel):
    type: Literal["send_comment"]
    message_id: int = Field(gt=0)
    content: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)


class TypingCommand(BaseModel):
    type: Literal["typing"]
    room_id: int = Field(gt=0)
    is_typing: bool = True


class MarkReadCommand(BaseModel):
    type: Literal["mark_read"]
    message_id: int = Field(gt=0)


class PingCommand(BaseModel):
    type: Literal["ping"]


class PongCommand(BaseModel):
    type: Literal["pong"]


ClientCommand = Annotated[
    Union[
        JoinRoomCommand,
        LeaveRoomCommand,
        SendMessageCommand,
        SendCommentCommand,
        TypingCommand,
        MarkReadCommand,
        PingCommand,
        PongCommand,
    ],
    Field(discriminator="type"),
]

_command_adapter: TypeAdapter[ClientCommand] = TypeAdapter(ClientCommand)


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through *websocket*, returning ``False`` instead of raising on disconnect."""
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


async def _send_error(websocket: WebSocket, code: str, detail: str, **extra: Any) -> None:
    await safe_send_json(websocket, {"type": "error", "code": code, "detail": detail, **extra})


def _extract_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


async def dispatch_command(relay: Relay, session_id: str, command: BaseModel) -> dict[str, Any] | None:
    """Execute one client command and return the acknowledgement frame, if any."""

    if isinstance(command, PingCommand):
        return {"type": "pong"}
    if isinstance(command, PongCommand):
        return None
    if isinstance(command, JoinRoomCommand):
        joined = await relay.join_room(session_id, command.room_id)
        return {
            "type": "ack",
            "command": command.type,
            "room_id": command.room_id,
            "joined": joined,
            "typing": relay.typing.snapshot(command.room_id),
        }
    if isinstance(command, LeaveRoomCommand):
        left = await relay.leave_room(session_id, command.room_id)
        return {"type": "ack", "command": command.type, "room_id": command.room_id, "left": left}
    if isinstance(command, SendMessageCommand):
        record = await relay.send_message(
            session_id, command.room_id, command.content, command.message_type
        )
        return {
            "type": "ack",
            "command": command.type,
            "room_id": command.room_id,
            "event_id": f"message:{record.message_id}",
            "message": record.to_public(),
        }
    if isinstance(command, SendCommentCommand):
        comment = await relay.send_comment(session_id, command.message_id, command.content)
        return {
            "type": "ack",
            "command": command.type,
            "event_id": f"comment:{comment.comment_id}",
            "comment": comment.to_public(),
        }
    if isinstance(command, TypingCommand):
        await relay.set_typing(session_id, command.room_id, command.is_typing)
        return None
    if isinstance(command, MarkReadCommand):
        await relay.mark_read(session_id, command.message_id)
        return {"type": "ack", "command": command.type, "message_id": command.message_id}
    raise ValueError(f"Unsupported command {command!r}")


async def _handle_frame(
    websocket: WebSocket, relay: Relay, session_id: str, raw_message: str, metrics: RelayMetrics
) -> None:
    try:
        payload = json.loads(raw_message)
    except json.JSONDecodeError:
        await _send_error(websocket, "invalid_payload", "Invalid payload")
        return
    if isinstance(payload, str) and payload.strip().lower() == "ping":
        await safe_send_json(websocket, {"type": "pong"})
        return
    try:
        command = _command_adapter.validate_python(payload)
    except ValidationError as exc:
        await _send_error(
            websocket,
            "invalid_payload",
            "Invalid payload",
            errors=exc.errors(include_url=False, include_context=False, include_input=False),
        )
        return

    metrics.event_received(command.type)
    try:
        reply = await dispatch_command(relay, session_id, command)
    except AuthzError as exc:
        await _send_error(websocket, "forbidden", str(exc), command=command.type, room_id=exc.room_id)
        return
    except CollaboratorTimeout as exc:
        await _send_error(websocket, "timeout", str(exc), command=command.type)
        return
    except UnknownMessage as exc:
        await _send_error(websocket, "not_found", str(exc), command=command.type, message_id=exc.message_id)
        return
    except CollaboratorError as exc:
        await _send_error(websocket, "unavailable", str(exc), command=command.type)
        return
    except UnknownSession:
        raise
    except RelayError as exc:
        logger.warning("Command %s failed: %s", command.type, exc)
        await _send_error(websocket, "failed", str(exc), command=command.type)
        return
    except Exception:
        logger.exception("Unhandled error while handling %s", command.type)
        await _send_error(websocket, "internal", "Internal error", command=command.type)
        return
    if reply is not None:
        await relay.sessions.send(session_id, reply)


@router.websocket("/ws")
async def websocket_relay(websocket: WebSocket) -> None:
    """Authenticate the connection and serve relay commands until it closes."""

    relay: Relay = websocket.app.state.relay
    metrics: RelayMetrics = getattr(websocket.app.state, "relay_metrics", RelayMetrics())

    token = _extract_token(websocket)
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return

    try:
        session = await relay.connect(token, websocket)
    except AuthError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.detail)
        return
    except CollaboratorTimeout:
        logger.warning("Identity lookup timed out; refusing connection")
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason="Identity service unavailable")
        return
    except CollaboratorError:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Identity service unavailable")
        return
    except TransportError:
        logger.debug("Connection dropped during admission")
        return

    session_id = session.session_id
    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            if not raw_message:
                continue
            try:
                await _handle_frame(websocket, relay, session_id, raw_message, metrics)
            except UnknownSession:
                break
            if session.closed:
                break
    finally:
        await relay.disconnect(session_id)
