"""Per-chat relationship bookkeeping for each known user."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatmem.models.base import Base, TimestampMixin, UTCDateTime


class UserRelationship(Base, TimestampMixin):
    __tablename__ = "user_relationships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), default="unknown", nullable=False,
        comment="friend, colleague, acquaintance or unknown",
    )
    last_interaction: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    interaction_count: Mapped[int] = mapped_column(
        Integer, default=1, nullable=False,
        comment="Number of distinct calendar days with activity",
    )
    common_topics: Mapped[list | None] = mapped_column(JSON, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    mood: Mapped[str] = mapped_column(String(20), default="neutral", nullable=False)

    __table_args__ = (
        UniqueConstraint("chat_id", "user_name", name="uq_relationship_user"),
    )
