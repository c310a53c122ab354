"""Metric hooks the relay core reports through.

The core stays importable without the application package; the app wires a
registry-backed implementation in at startup.
"""

from __future__ import annotations


class RelayMetrics:
    """No-op metric sink. Subclasses forward to a real registry."""

    def session_opened(self) -> None:
        pass

    def session_closed(self) -> None:
        pass

    def subscriptions_changed(self, delta: int) -> None:
        pass

    def event_delivered(self, event_type: str) -> None:
        pass

    def event_received(self, command: str) -> None:
        pass

    def delivery_failed(self, reason: str) -> None:
        pass

    def join_rejected(self, reason: str) -> None:
        pass

    def presence_transition(self, state: str) -> None:
        pass


NULL_METRICS = RelayMetrics()

__all__ = ["NULL_METRICS", "RelayMetrics"]
