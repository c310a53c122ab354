"""Error taxonomy shared by the realtime relay components."""

from __future__ import annotations

from enum import Enum


class RelayError(Exception):
    """Base class for every error raised by the relay core."""


class AuthErrorKind(str, Enum):
    """Reasons a bearer credential can be refused."""

    INVALID = "invalid"
    EXPIRED = "expired"
    UNKNOWN_IDENTITY = "unknown_identity"


class AuthError(RelayError):
    """Raised when a connection attempt presents an unusable credential."""

    def __init__(self, kind: AuthErrorKind, detail: str | None = None) -> None:
        self.kind = kind
        self.detail = detail or {
            AuthErrorKind.INVALID: "Could not validate credentials",
            AuthErrorKind.EXPIRED: "Token has expired",
            AuthErrorKind.UNKNOWN_IDENTITY: "User not found",
        }[kind]
        super().__init__(self.detail)


class AuthzError(RelayError):
    """Raised when an identity may not subscribe to a room."""

    def __init__(self, room_id: int, identity_id: int) -> None:
        self.room_id = room_id
        self.identity_id = identity_id
        super().__init__(f"User {identity_id} is not a participant of room {room_id}")


class TransportError(RelayError):
    """Raised when pushing an event to a session's transport fails."""

    def __init__(self, session_id: str, reason: str = "send_failed") -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Delivery to session {session_id} failed ({reason})")


class CollaboratorTimeout(RelayError):
    """Raised when an identity or persistence lookup exceeds its time bound."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} did not complete within {timeout:g}s")


class CollaboratorError(RelayError):
    """Raised when an identity or persistence call fails outright."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} failed")


class UnknownMessage(RelayError):
    """Raised when a command references a message the store does not know."""

    def __init__(self, message_id: int) -> None:
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found")


class UnknownSession(RelayError):
    """Raised when a command references a session that is no longer live."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} is not connected")


__all__ = [
    "AuthError",
    "AuthErrorKind",
    "AuthzError",
    "CollaboratorError",
    "CollaboratorTimeout",
    "RelayError",
    "TransportError",
    "UnknownMessage",
    "UnknownSession",
]
