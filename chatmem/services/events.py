"""Event pattern detection and the chat event log."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatmem.core.clock import ensure_utc
from chatmem.lexicons import EventLexicon, EventTemplate, TermSet, load_event_lexicon
from chatmem.models.event import ChatEventRecord
from chatmem.schemas import ChatEvent, StoredMessage
from chatmem.services.cache import CacheRegistry
from chatmem.services.memory import _validated, _validated_all

logger = logging.getLogger(__name__)

PRECEDING_WINDOW = 3
RECURRING_TYPES = frozenset({"celebration", "tradition"})

_TITLES = {
    "conflict": "Конфликт с участием {author}",
    "funny_moment": "Смешной момент от {author}",
    "decision": "Важное решение группы",
    "revelation": "Откровение {author}",
    "milestone": "Достижение {author}",
    "topic_shift": "Смена темы",
    "shared_experience": "Общее воспоминание",
    "tradition": "Традиция чата",
}


class _CompiledTemplate:
    __slots__ = ("template", "keywords", "markers", "clues")

    def __init__(self, template: EventTemplate):
        self.template = template
        self.keywords = [TermSet(g) for g in template.keywords]
        self.markers = [TermSet(g) for g in template.markers]
        self.clues = [TermSet(g) for g in template.clues]


def _ratio(groups: Sequence[TermSet], text: str) -> float:
    if not groups or not text:
        return 0.0
    return sum(1 for g in groups if g.any(text)) / len(groups)


class EventDetector:
    """Match a message and its preceding window against the event templates.

    Templates are tried in order; the first whose score reaches its
    ``min_importance`` wins.
    """

    def __init__(self, lexicon: EventLexicon | None = None):
        self.lexicon = lexicon or load_event_lexicon()
        self._templates = [_CompiledTemplate(t) for t in self.lexicon.templates]

    def score(self, template: EventTemplate | _CompiledTemplate, text: str, preceding_text: str = "") -> float:
        compiled = template if isinstance(template, _CompiledTemplate) else _CompiledTemplate(template)
        lowered = text.lower()
        value = (
            0.4 * _ratio(compiled.keywords, lowered)
            + 0.3 * _ratio(compiled.markers, lowered)
            + 0.2 * _ratio(compiled.clues, lowered)
            + 0.1 * _ratio(compiled.keywords, preceding_text.lower())
        )
        return min(value, 1.0)

    def detect(self, message: StoredMessage, preceding: Sequence[StoredMessage] = ()) -> ChatEvent | None:
        window = list(preceding)[-PRECEDING_WINDOW:]
        preceding_text = " ".join(m.content for m in window)
        for compiled in self._templates:
            score = self.score(compiled, message.content, preceding_text)
            if score >= compiled.template.min_importance:
                event = self._build(message, window, compiled, score)
                logger.debug("Event detected: %s (%.2f) %r", event.event_type, score, event.title)
                return event
        return None

    def _build(
        self,
        message: StoredMessage,
        window: Sequence[StoredMessage],
        compiled: _CompiledTemplate,
        score: float,
    ) -> ChatEvent:
        event_type = compiled.template.event_type
        lowered = message.content.lower()

        participants = list(dict.fromkeys(
            [message.author, *message.mentions, *(m.author for m in window)]
        ))
        tags = [event_type, message.author]
        for group in compiled.keywords:
            for term in group.hits(lowered):
                if term not in tags:
                    tags.append(term)

        lines = [f"{m.author}: {m.content[:100]}" for m in window[-2:]]
        event_line = f"{message.author}: {message.content[:200]}"
        description = f"Контекст:\n{chr(10).join(lines)}\n\nСобытие:\n{event_line}" if lines else event_line

        return ChatEvent(
            chat_id=message.chat_id,
            event_type=event_type,
            timestamp=message.timestamp,
            participants=participants,
            title=self._title(event_type, message.author, lowered, compiled),
            description=description,
            context=message.content,
            importance=score,
            tags=tags,
            related_message_ids=[message.source_id, *(m.source_id for m in window[-2:])],
            is_recurring=event_type in RECURRING_TYPES,
        )

    @staticmethod
    def _title(event_type: str, author: str, lowered: str, compiled: _CompiledTemplate) -> str:
        if event_type == "celebration":
            birthday = compiled.keywords[0] if compiled.keywords else None
            if birthday is not None and birthday.any(lowered):
                return "День рождения в чате"
            return "Празднование"
        if event_type == "departure":
            if "вернул" in lowered or "снова здесь" in lowered:
                return f"Возвращение {author}"
            return f"Уход {author}"
        return _TITLES.get(event_type, "Событие от {author}").format(author=author)


class EventService:
    """Persist and query chat events."""

    def __init__(self, db: AsyncSession, caches: CacheRegistry | None = None):
        self.db = db
        self._caches = caches

    async def record(self, event: ChatEvent) -> ChatEvent:
        row = ChatEventRecord(
            chat_id=event.chat_id,
            event_type=event.event_type,
            timestamp=ensure_utc(event.timestamp),
            participants=list(event.participants),
            title=event.title,
            description=event.description,
            context=event.context,
            search_text=" ".join([event.title, event.description, *event.tags]).lower(),
            importance=event.importance,
            tags=list(event.tags),
            related_message_ids=list(event.related_message_ids),
            is_recurring=event.is_recurring,
            mention_count=event.mention_count,
        )
        self.db.add(row)
        await self.db.flush()
        self._invalidate(event.chat_id)
        logger.info("Event saved: %s %r (importance %.2f)", event.event_type, event.title, event.importance)
        return ChatEvent.model_validate(row)

    async def relevant(self, chat_id: str, keywords: Sequence[str], limit: int = 5) -> list[ChatEvent]:
        keywords = [k.lower() for k in keywords if k]
        if not keywords:
            return []

        async def _load() -> list[ChatEvent]:
            rows = (await self.db.scalars(
                select(ChatEventRecord)
                .where(
                    ChatEventRecord.chat_id == chat_id,
                    or_(*(ChatEventRecord.search_text.contains(k, autoescape=True) for k in keywords)),
                )
                .order_by(ChatEventRecord.importance.desc(), ChatEventRecord.timestamp.desc())
                .limit(limit)
            )).all()
            return _validated_all(ChatEvent, rows, "event")

        return await self._cached(f"{chat_id}:relevant:{','.join(keywords)}:{limit}", _load)

    async def by_type(self, chat_id: str, event_type: str, limit: int = 10) -> list[ChatEvent]:
        rows = (await self.db.scalars(
            select(ChatEventRecord)
            .where(ChatEventRecord.chat_id == chat_id, ChatEventRecord.event_type == event_type)
            .order_by(ChatEventRecord.timestamp.desc())
            .limit(limit)
        )).all()
        return _validated_all(ChatEvent, rows, "event")

    async def recent_important(
        self, chat_id: str, now: datetime, days: int = 30, min_importance: float = 0.6, limit: int = 10
    ) -> list[ChatEvent]:
        cutoff = ensure_utc(now) - timedelta(days=days)
        rows = (await self.db.scalars(
            select(ChatEventRecord)
            .where(
                ChatEventRecord.chat_id == chat_id,
                ChatEventRecord.timestamp >= cutoff,
                ChatEventRecord.importance >= min_importance,
            )
            .order_by(ChatEventRecord.importance.desc(), ChatEventRecord.timestamp.desc())
            .limit(limit)
        )).all()
        return _validated_all(ChatEvent, rows, "event")

    async def mark_mentioned(self, event_id: int, now: datetime) -> ChatEvent | None:
        row = await self.db.get(ChatEventRecord, event_id)
        if row is None:
            return None
        row.last_mentioned = ensure_utc(now)
        row.mention_count = (row.mention_count or 0) + 1
        await self.db.flush()
        self._invalidate(row.chat_id)
        return _validated(ChatEvent, row, "event")

    async def memorable(self, chat_id: str, now: datetime, limit: int = 3) -> list[ChatEvent]:
        """Important events not brought up in the last three days."""
        cutoff = ensure_utc(now) - timedelta(days=3)
        rows = (await self.db.scalars(
            select(ChatEventRecord)
            .where(
                ChatEventRecord.chat_id == chat_id,
                ChatEventRecord.importance >= 0.7,
                or_(ChatEventRecord.last_mentioned.is_(None), ChatEventRecord.last_mentioned < cutoff),
            )
            .order_by(ChatEventRecord.importance.desc(), ChatEventRecord.timestamp.desc())
            .limit(limit)
        )).all()
        return _validated_all(ChatEvent, rows, "event")

    async def archive_old(self, now: datetime, days: int = 90, chat_id: str | None = None) -> int:
        """Drop old, unimportant, never-mentioned events."""
        cutoff = ensure_utc(now) - timedelta(days=days)
        stmt = delete(ChatEventRecord).where(
            ChatEventRecord.timestamp < cutoff,
            ChatEventRecord.importance < 0.6,
            ChatEventRecord.mention_count == 0,
        )
        if chat_id is not None:
            stmt = stmt.where(ChatEventRecord.chat_id == chat_id)
        removed = (await self.db.execute(stmt)).rowcount or 0
        if removed:
            logger.info("Archived %d old events", removed)
            if self._caches is not None:
                self._caches.events.clear()
        return removed

    async def stats(self, chat_id: str) -> dict:
        rows = (await self.db.execute(
            select(ChatEventRecord.event_type, func.count(ChatEventRecord.id), func.avg(ChatEventRecord.importance))
            .where(ChatEventRecord.chat_id == chat_id)
            .group_by(ChatEventRecord.event_type)
        )).all()
        by_type = {event_type: {"count": count, "avg_importance": float(avg or 0.0)} for event_type, count, avg in rows}
        return {"total": sum(v["count"] for v in by_type.values()), "by_type": by_type}

    async def _cached(self, key: str, loader):
        if self._caches is None:
            return await loader()
        return await self._caches.events.get_or_compute(key, loader)

    def _invalidate(self, chat_id: str) -> None:
        if self._caches is not None:
            self._caches.invalidate_chat(chat_id, ["events"])
