"""Realtime relay core: sessions, rooms, presence, typing and fan-out."""

from .broadcast import BroadcastPipeline, PublishReport  # noqa: F401
from .collaborators import (  # noqa: F401
    CommentRecord,
    Identity,
    IdentityDirectory,
    MessageRecord,
    Persistence,
    ReadReceipt,
)
from .delivery import DeliveryTracker  # noqa: F401
from .errors import (  # noqa: F401
    AuthError,
    AuthErrorKind,
    AuthzError,
    CollaboratorError,
    CollaboratorTimeout,
    RelayError,
    TransportError,
    UnknownMessage,
    UnknownSession,
)
from .events import DeliveryState, Event, EventType  # noqa: F401
from .identity import IdentityVerifier, create_access_token  # noqa: F401
from .instrumentation import RelayMetrics  # noqa: F401
from .presence import PresenceRecord, PresenceTracker  # noqa: F401
from .relay import Relay, RelayConfig  # noqa: F401
from .rooms import RoomRegistry  # noqa: F401
from .sessions import ListenerHandle, Session, SessionRegistry  # noqa: F401
from .typing_indicators import TypingAggregator  # noqa: F401

__all__ = [
    "AuthError",
    "AuthErrorKind",
    "AuthzError",
    "BroadcastPipeline",
    "CollaboratorError",
    "CollaboratorTimeout",
    "CommentRecord",
    "DeliveryState",
    "DeliveryTracker",
    "Event",
    "EventType",
    "Identity",
    "IdentityDirectory",
    "IdentityVerifier",
    "ListenerHandle",
    "MessageRecord",
    "Persistence",
    "PresenceRecord",
    "PresenceTracker",
    "PublishReport",
    "ReadReceipt",
    "Relay",
    "RelayConfig",
    "RelayError",
    "RelayMetrics",
    "RoomRegistry",
    "Session",
    "SessionRegistry",
    "TransportError",
    "TypingAggregator",
    "UnknownMessage",
    "UnknownSession",
    "create_access_token",
]
