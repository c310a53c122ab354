"""Metric definitions for the realtime relay."""

from __future__ import annotations

from parley.realtime import RelayMetrics

from .registry import registry


relay_active_sessions = registry.gauge(
    "relay_active_sessions",
    "Number of live websocket sessions held by this relay.",
)

relay_room_subscriptions = registry.gauge(
    "relay_room_subscriptions",
    "Number of (session, room) subscriptions currently held.",
)

relay_events_total = registry.counter(
    "relay_events_total",
    "Frames processed by the relay.",
    label_names=("type", "direction"),
)

relay_delivery_failures_total = registry.counter(
    "relay_delivery_failures_total",
    "Frames that could not be pushed to a session.",
    label_names=("reason",),
)

relay_join_rejections_total = registry.counter(
    "relay_join_rejections_total",
    "Room joins refused by the authorization check.",
    label_names=("reason",),
)

relay_presence_transitions_total = registry.counter(
    "relay_presence_transitions_total",
    "Online/offline transitions broadcast by the presence tracker.",
    label_names=("state",),
)


class RegistryRelayMetrics(RelayMetrics):
    """Forward relay hooks to the shared metrics registry."""

    def session_opened(self) -> None:
        relay_active_sessions.labels().inc()

    def session_closed(self) -> None:
        relay_active_sessions.labels().dec()

    def subscriptions_changed(self, delta: int) -> None:
        if delta >= 0:
            relay_room_subscriptions.labels().inc(delta)
        else:
            relay_room_subscriptions.labels().dec(-delta)

    def event_delivered(self, event_type: str) -> None:
        relay_events_total.labels(event_type, "outbound").inc()

    def event_received(self, command: str) -> None:
        relay_events_total.labels(command, "inbound").inc()

    def delivery_failed(self, reason: str) -> None:
        relay_delivery_failures_total.labels(reason).inc()

    def join_rejected(self, reason: str) -> None:
        relay_join_rejections_total.labels(reason).inc()

    def presence_transition(self, state: str) -> None:
        relay_presence_transitions_total.labels(state).inc()
