"""Client helpers for talking to the relay."""

from .reconnect import (  # noqa: F401
    CallbackHandle,
    ConnectionState,
    HttpHistoryClient,
    NotConnectedError,
    ReconnectController,
)

__all__ = [
    "CallbackHandle",
    "ConnectionState",
    "HttpHistoryClient",
    "NotConnectedError",
    "ReconnectController",
]
