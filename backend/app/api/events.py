"""Hooks REST handlers call after a write so the relay can fan it out."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.api.deps import get_relay, require_internal_token
from parley.realtime import DeliveryState, EventType, Relay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"], dependencies=[Depends(require_internal_token)])


class RoomEventPublish(BaseModel):
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    origin_identity_id: int | None = None


class DeliveryStateUpdate(BaseModel):
    state: DeliveryState
    room_id: int | None = None


class PublishResult(BaseModel):
    event_id: str
    delivered: int
    failed: int


class DeliveryStateResult(BaseModel):
    message_id: int
    state: DeliveryState | None
    changed: bool


@router.post("/rooms/{room_id}/events", response_model=PublishResult, status_code=status.HTTP_202_ACCEPTED)
async def publish_room_event(
    room_id: int,
    payload: RoomEventPublish,
    relay: Relay = Depends(get_relay),
) -> PublishResult:
    """Fan a stored message, comment or conversation update out to the room."""

    try:
        event = relay.build_event(room_id, payload.type, payload.data)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    report = await relay.publish(room_id, event, origin_identity=payload.origin_identity_id)
    logger.debug("Published external %s event to room %s", payload.type.value, room_id)
    return PublishResult(event_id=report.event_id, delivered=len(report.delivered), failed=len(report.failed))


@router.post("/messages/{message_id}/delivery-state", response_model=DeliveryStateResult)
async def update_delivery_state(
    message_id: int,
    payload: DeliveryStateUpdate,
    relay: Relay = Depends(get_relay),
) -> DeliveryStateResult:
    """Advance a message's delivery state; stale or repeated updates are ignored."""

    changed = await relay.notify_delivery_state(message_id, payload.state, payload.room_id)
    return DeliveryStateResult(message_id=message_id, state=relay.delivery.state(message_id), changed=changed)
