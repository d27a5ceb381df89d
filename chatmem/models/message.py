"""Episodic message log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, CheckConstraint, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatmem.models.base import Base, TimestampMixin, UTCDateTime


class Message(Base, TimestampMixin):
    """One inbound or outbound chat turn. Immutable once stored."""

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[str] = mapped_column(
        String(64), nullable=False, comment="Transport message id, unique per chat"
    )
    author: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    search_text: Mapped[str] = mapped_column(
        Text, nullable=False, default="",
        comment="Case-folded content used for substring relevance queries",
    )
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    message_type: Mapped[str] = mapped_column(String(20), default="text", nullable=False)
    from_agent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    importance: Mapped[float] = mapped_column(Float, default=0.5, nullable=False)
    emotion: Mapped[str] = mapped_column(
        String(20), default="neutral", nullable=False,
        comment="Coarse tag: positive, negative, excited, friendly, curious, engaging, neutral",
    )
    topics: Mapped[list | None] = mapped_column(JSON, nullable=True)
    mentions: Mapped[list | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("chat_id", "source_id", name="uq_message_source"),
        CheckConstraint("importance >= 0 AND importance <= 1", name="chk_message_importance"),
        Index("ix_messages_chat_time", "chat_id", "timestamp"),
        Index("ix_messages_chat_author", "chat_id", "author"),
    )
