"""SQLAlchemy models for chatmem."""

# Import all models to ensure they're registered with Base
from chatmem.models.base import Base, TimestampMixin, UTCDateTime
from chatmem.models.emotional_state import EmotionalProfileRecord, GroupStateSnapshot
from chatmem.models.event import ChatEventRecord
from chatmem.models.message import Message
from chatmem.models.relationship import UserRelationship
from chatmem.models.topic import TOPIC_STATUSES, ChatTopic

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "Message",
    "UserRelationship",
    "ChatTopic",
    "TOPIC_STATUSES",
    "ChatEventRecord",
    "EmotionalProfileRecord",
    "GroupStateSnapshot",
]
