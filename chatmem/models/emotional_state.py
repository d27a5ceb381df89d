"""Persisted emotional profiles and group-state snapshots.

Payloads are JSON validated through the pydantic schemas in
``chatmem.schemas`` when read back.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chatmem.models.base import Base, TimestampMixin, UTCDateTime


class EmotionalProfileRecord(Base, TimestampMixin):
    """Latest emotional profile per (chat, user). Rebuilt, then replaced."""

    __tablename__ = "emotional_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    source_count: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Number of messages the profile was built from"
    )
    built_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("chat_id", "user_name", name="uq_profile_user"),
    )


class GroupStateSnapshot(Base, TimestampMixin):
    """Append-only time series of group emotional state."""

    __tablename__ = "group_state_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_group_state_chat_time", "chat_id", "computed_at"),
    )
