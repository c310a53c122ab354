from __future__ import annotations

import asyncio

import pytest

from parley.realtime import AuthError, AuthzError, CollaboratorTimeout, EventType

from conftest import DummyWebSocket


@pytest.mark.anyio("asyncio")
async def test_connect_with_bad_token_creates_no_session(harness) -> None:
    async with harness.running() as relay:
        with pytest.raises(AuthError):
            await relay.connect("garbage", DummyWebSocket())  # type: ignore[arg-type]

        assert len(relay.sessions) == 0


@pytest.mark.anyio("asyncio")
async def test_send_message_by_non_participant_is_refused(harness) -> None:
    async with harness.running() as relay:
        carol, _ = await harness.connect(relay, 3)

        with pytest.raises(AuthzError):
            await relay.send_message(carol.session_id, 7, "let me in")

        assert harness.persistence.messages == {}


@pytest.mark.anyio("asyncio")
async def test_send_message_without_join_is_allowed_for_participants(harness) -> None:
    async with harness.running() as relay:
        alice, _ = await harness.connect(relay, 1)
        bob, bob_ws = await harness.connect(relay, 2)
        await relay.join_room(bob.session_id, 7)

        record = await relay.send_message(alice.session_id, 7, "hi bob")

        assert bob_ws.of_type("message")[0]["event_id"] == f"message:{record.message_id}"


@pytest.mark.anyio("asyncio")
async def test_send_message_publishes_room_update(harness) -> None:
    async with harness.running() as relay:
        alice, alice_ws = await harness.connect(relay, 1)
        bob, bob_ws = await harness.connect(relay, 2)
        await relay.join_room(alice.session_id, 7)
        await relay.join_room(bob.session_id, 7)

        record = await relay.send_message(alice.session_id, 7, "update the list")

        for websocket in (alice_ws, bob_ws):
            update = websocket.of_type("room_updated")[0]
            assert update["conversation"]["id"] == 7
            assert update["conversation"]["last_message"]["id"] == record.message_id


@pytest.mark.anyio("asyncio")
async def test_comment_fans_out_to_room(harness) -> None:
    async with harness.running() as relay:
        alice, alice_ws = await harness.connect(relay, 1)
        bob, bob_ws = await harness.connect(relay, 2)
        await relay.join_room(alice.session_id, 7)
        await relay.join_room(bob.session_id, 7)
        message = harness.persistence.add_message(7, 2)

        comment = await relay.send_comment(alice.session_id, message.message_id, "nice")

        received = bob_ws.of_type("comment")
        assert [p["event_id"] for p in received] == [f"comment:{comment.comment_id}"]
        assert received[0]["comment"]["message_id"] == message.message_id
        assert alice_ws.of_type("comment") == []


@pytest.mark.anyio("asyncio")
async def test_leave_room_stops_delivery(harness) -> None:
    async with harness.running() as relay:
        alice, alice_ws = await harness.connect(relay, 1)
        bob, _ = await harness.connect(relay, 2)
        await relay.join_room(alice.session_id, 7)

        assert await relay.leave_room(alice.session_id, 7) is True
        assert await relay.leave_room(alice.session_id, 7) is False
        await relay.send_message(bob.session_id, 7, "gone?")

        assert alice_ws.of_type("message") == []


@pytest.mark.anyio("asyncio")
async def test_build_event_from_rest_payload(harness) -> None:
    relay = harness.build()

    event = relay.build_event(7, EventType.MESSAGE, {"id": 55, "content": "stored elsewhere"})

    assert event.event_id == "message:55"
    assert event.message_id == 55
    assert event.to_payload()["message"]["content"] == "stored elsewhere"
    with pytest.raises(ValueError):
        relay.build_event(7, EventType.PRESENCE, {})


@pytest.mark.anyio("asyncio")
async def test_stop_dismisses_live_sessions(harness) -> None:
    relay = harness.build()
    await relay.start()
    _, websocket = await harness.connect(relay, 1)

    await relay.stop()

    assert len(relay.sessions) == 0
    assert websocket.closed
    assert not relay.started


@pytest.mark.anyio("asyncio")
async def test_message_stored_after_timeout_is_still_relayed(harness) -> None:
    async with harness.running(collaborator_timeout_seconds=0.05) as relay:
        alice, alice_ws = await harness.connect(relay, 1)
        bob, bob_ws = await harness.connect(relay, 2)
        await relay.join_room(alice.session_id, 7)
        await relay.join_room(bob.session_id, 7)
        harness.persistence.delays["create_message"] = 0.15

        with pytest.raises(CollaboratorTimeout):
            await relay.send_message(alice.session_id, 7, "slow write")
        assert bob_ws.of_type("message") == []

        await asyncio.sleep(0.25)

        [stored] = harness.persistence.messages.values()
        for websocket in (alice_ws, bob_ws):
            [event] = websocket.of_type("message")
            assert event["event_id"] == f"message:{stored.message_id}"
        assert relay.delivery.state(stored.message_id) is not None


@pytest.mark.anyio("asyncio")
async def test_slow_lookup_in_one_room_does_not_hold_up_another(harness) -> None:
    harness.persistence.add_participants(8, 1)
    async with harness.running(collaborator_timeout_seconds=1.0) as relay:
        alice, alice_ws = await harness.connect(relay, 1)
        bob, _ = await harness.connect(relay, 2)
        await relay.join_room(alice.session_id, 7)
        await relay.join_room(bob.session_id, 7)
        harness.persistence.room_delays[8] = 0.3

        loop = asyncio.get_running_loop()
        join = asyncio.create_task(relay.join_room(alice.session_id, 8))
        await asyncio.sleep(0.01)
        started = loop.time()
        await relay.send_message(bob.session_id, 7, "not blocked")
        elapsed = loop.time() - started

        assert elapsed < 0.15
        assert not join.done()
        assert alice_ws.of_type("message")[0]["message"]["content"] == "not blocked"
        assert await join is True
