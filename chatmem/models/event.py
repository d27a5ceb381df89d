"""Notable chat events detected from message patterns."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from chatmem.models.base import Base, TimestampMixin, UTCDateTime


class ChatEventRecord(Base, TimestampMixin):
    __tablename__ = "chat_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    participants: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    search_text: Mapped[str] = mapped_column(
        Text, nullable=False, default="",
        comment="Case-folded title, description and tags for keyword lookup",
    )
    importance: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    related_message_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_mentioned: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    mention_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_events_chat_time", "chat_id", "timestamp"),
        Index("ix_events_chat_type", "chat_id", "event_type"),
        Index("ix_events_importance", "chat_id", "importance"),
    )
