from __future__ import annotations

import pytest

from app.config import get_settings
from parley.realtime import create_access_token

from conftest import SECRET_KEY


def _joined(client, identity_id: int, room_id: int):
    connection = client.websocket_connect(f"/ws?token={create_access_token(identity_id, SECRET_KEY)}")
    websocket = connection.__enter__()
    websocket.send_json({"type": "join_room", "room_id": room_id})
    while websocket.receive_json()["type"] != "ack":
        pass
    return connection, websocket


def test_publish_stored_message_reaches_room(client, seeded) -> None:
    room = seeded["room"]
    connection, alice = _joined(client, seeded["alice"], room)
    try:
        response = client.post(
            f"/internal/rooms/{room}/events",
            json={
                "type": "message",
                "data": {"id": 55, "content": "saved over REST", "sender_id": seeded["bob"]},
                "origin_identity_id": seeded["bob"],
            },
        )

        assert response.status_code == 202
        assert response.json() == {"event_id": "message:55", "delivered": 1, "failed": 0}

        frame = alice.receive_json()
        while frame["type"] != "message":
            frame = alice.receive_json()
        assert frame["event_id"] == "message:55"
        assert frame["message"]["content"] == "saved over REST"
    finally:
        connection.__exit__(None, None, None)

    state = client.post("/internal/messages/55/delivery-state", json={"state": "sent", "room_id": room})
    assert state.json() == {"message_id": 55, "state": "delivered", "changed": False}


def test_publish_skips_originating_identity(client, seeded) -> None:
    room = seeded["room"]
    connection, _ = _joined(client, seeded["alice"], room)
    try:
        response = client.post(
            f"/internal/rooms/{room}/events",
            json={
                "type": "room_updated",
                "data": {"id": room, "name": "renamed"},
                "origin_identity_id": seeded["alice"],
            },
        )
    finally:
        connection.__exit__(None, None, None)

    assert response.status_code == 202
    assert response.json()["delivered"] == 0
    assert response.json()["event_id"].startswith(f"room_updated:{room}:")


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "message", "data": {"content": "no id"}},
        {"type": "presence", "data": {"user_id": 1}},
    ],
)
def test_publish_rejects_unpublishable_payloads(client, payload) -> None:
    response = client.post("/internal/rooms/1/events", json=payload)

    assert response.status_code == 422


def test_delivery_state_only_moves_forward(client) -> None:
    first = client.post("/internal/messages/9/delivery-state", json={"state": "read", "room_id": 1})
    second = client.post("/internal/messages/9/delivery-state", json={"state": "delivered", "room_id": 1})

    assert first.json() == {"message_id": 9, "state": "read", "changed": True}
    assert second.json() == {"message_id": 9, "state": "read", "changed": False}


def test_delivery_state_rejects_unknown_state(client) -> None:
    response = client.post("/internal/messages/9/delivery-state", json={"state": "lost"})

    assert response.status_code == 422


def test_internal_token_is_enforced_when_configured(client, monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "internal_api_token", "s3cret")

    missing = client.post("/internal/messages/1/delivery-state", json={"state": "sent"})
    wrong = client.post(
        "/internal/messages/1/delivery-state", json={"state": "sent"}, headers={"X-Relay-Token": "nope"}
    )
    accepted = client.post(
        "/internal/messages/1/delivery-state", json={"state": "sent"}, headers={"X-Relay-Token": "s3cret"}
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert accepted.status_code == 200


def test_relay_missing_returns_503(client) -> None:
    relay = client.app.state.relay
    client.app.state.relay = None
    try:
        response = client.post("/internal/messages/1/delivery-state", json={"state": "sent"})
    finally:
        client.app.state.relay = relay

    assert response.status_code == 503


def test_health_and_metrics(client, seeded) -> None:
    token = create_access_token(seeded["alice"], SECRET_KEY)
    with client.websocket_connect(f"/ws?token={token}") as connection:
        while connection.receive_json()["type"] != "presence":
            pass
        health = client.get("/health")
        metrics = client.get("/metrics")

    assert health.status_code == 200
    assert metrics.status_code == 200
    assert "relay_active_sessions" in metrics.text
    assert 'relay_events_total{type="presence",direction="outbound"}' in metrics.text
