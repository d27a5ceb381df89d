"""Discussion topics tracked per chat."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatmem.models.base import Base, TimestampMixin, UTCDateTime

TOPIC_STATUSES = ("active", "resolved", "ongoing", "archived")


class ChatTopic(Base, TimestampMixin):
    __tablename__ = "chat_topics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    topic: Mapped[str] = mapped_column(String(255), nullable=False)
    first_mentioned: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_mentioned: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    mention_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    related_users: Mapped[list | None] = mapped_column(JSON, nullable=True)
    importance: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)

    __table_args__ = (
        UniqueConstraint("chat_id", "topic", name="uq_chat_topic"),
        CheckConstraint("importance >= 0 AND importance <= 1", name="chk_topic_importance"),
        CheckConstraint(
            "status IN ('active', 'resolved', 'ongoing', 'archived')", name="chk_topic_status"
        ),
        Index("ix_topics_chat_status", "chat_id", "status"),
    )
