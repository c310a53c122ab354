"""Database models package."""

from .base import Base
from .chat import Comment, Conversation, ConversationParticipant, Message, MessageRead, User
from .enums import ConversationType, MessageType

__all__ = [
    "Base",
    "User",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageRead",
    "Comment",
    "ConversationType",
    "MessageType",
]
