from __future__ import annotations

from enum import Enum


class ConversationType(str, Enum):
    """Kinds of conversation a room can represent."""

    DIRECT = "direct"
    GROUP = "group"


class MessageType(str, Enum):
    """Payload kinds a message can carry."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
