"""Episodic memory store: message log, topics, relationships, retention."""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo

from pydantic import BaseModel, ValidationError
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatmem.core.clock import ensure_utc, local_date
from chatmem.core.errors import clamp_logged, report_integrity
from chatmem.lexicons import ConversationLexicon, TermSet, load_conversation_lexicon
from chatmem.models.message import Message
from chatmem.models.relationship import UserRelationship
from chatmem.models.topic import ChatTopic
from chatmem.schemas import MemoryContext, RelationshipView, StoredMessage, TopicView
from chatmem.services.cache import CacheRegistry, normalize_text
from chatmem.services.emotion import EmotionTagger

logger = logging.getLogger(__name__)

RETAIN_IMPORTANCE = 0.7
RELEVANCE_BOOST = 0.3
MAX_COMMON_TOPICS = 10

_POSITIVE_TAGS = {"positive", "excited", "friendly", "funny"}
_NEGATIVE_TAGS = {"negative", "angry", "sad"}
_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)
_MENTION = re.compile(r"@(\w+)", re.UNICODE)


def _validated(model: type[BaseModel], row, what: str):
    """Convert an ORM row to its view model; malformed rows are reported and dropped."""
    try:
        return model.model_validate(row)
    except ValidationError as e:
        report_integrity("malformed %s row id=%s: %s", what, getattr(row, "id", "?"), e.errors()[:1])
        return None


def _validated_all(model: type[BaseModel], rows, what: str) -> list:
    return [v for v in (_validated(model, r, what) for r in rows) if v is not None]


@dataclass
class Annotation:
    importance: float
    emotion: str
    topics: list[str] = field(default_factory=list)
    mentions: list[str] = field(default_factory=list)
    mentions_agent: bool = False


class MessageAnnotator:
    """Derive importance, emotion tag, topics and @-mentions for a message."""

    def __init__(
        self,
        lexicon: ConversationLexicon | None = None,
        aliases: Sequence[str] = (),
        tagger: EmotionTagger | None = None,
    ):
        self.lexicon = lexicon or load_conversation_lexicon()
        self._aliases = TermSet(list(aliases))
        self._alias_words = {a.lower() for a in aliases}
        self._topic_stopwords = set(self.lexicon.topic_stopwords) | set(self.lexicon.keyword_stopwords)
        self._tagger = tagger or EmotionTagger(self.lexicon, aliases)

    def annotate(self, text: str) -> Annotation:
        lowered = text.lower()
        mentions_agent = self._aliases.any(lowered) or any(
            m.lower() in self._alias_words for m in _MENTION.findall(text)
        )
        importance = 0.5
        if mentions_agent:
            importance += 0.3
        if len(text) > 100:
            importance += 0.2
        if "?" in text:
            importance += 0.1
        return Annotation(
            importance=max(0.1, min(importance, 1.0)),
            emotion=self._tagger.tag(text),
            topics=self.extract_topics(text),
            mentions=_MENTION.findall(text),
            mentions_agent=mentions_agent,
        )

    def extract_topics(self, text: str, limit: int = 2) -> list[str]:
        words = _NON_WORD.sub(" ", text.lower()).split()
        topics: list[str] = []
        for w in words:
            if len(w) < 5 or w.isdigit() or w in self._topic_stopwords or w in self._alias_words:
                continue
            if w not in topics:
                topics.append(w)
            if len(topics) >= limit:
                break
        return topics


def extract_keywords(text: str, stopwords: Sequence[str], limit: int = 5) -> list[str]:
    """Lowercase, strip punctuation, keep words of 3+ chars that are not stopwords."""
    stop = set(stopwords)
    words = _NON_WORD.sub(" ", text.lower()).split()
    return [w for w in words if len(w) >= 3 and w not in stop][:limit]


def mood_from_tags(tags: Sequence[str]) -> str:
    positive = sum(1 for t in tags if t in _POSITIVE_TAGS)
    negative = sum(1 for t in tags if t in _NEGATIVE_TAGS)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


class MemoryStore:
    """Episodic memory over one session.

    Reads go through the ``memory`` and ``topics`` caches when a registry is
    given. Every mutation invalidates the chat's cached entries.
    """

    def __init__(
        self,
        db: AsyncSession,
        caches: CacheRegistry | None = None,
        tz: tzinfo = timezone.utc,
        lexicon: ConversationLexicon | None = None,
    ):
        self.db = db
        self._caches = caches
        self._tz = tz
        self._lexicon = lexicon or load_conversation_lexicon()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def add_message(
        self,
        chat_id: str,
        source_id: str,
        author: str,
        content: str,
        timestamp: datetime,
        *,
        message_type: str = "text",
        from_agent: bool = False,
        importance: float = 0.5,
        emotion: str = "neutral",
        topics: Sequence[str] | None = None,
        mentions: Sequence[str] | None = None,
    ) -> tuple[StoredMessage | None, bool]:
        """Insert if absent. Returns (message, created).

        An already stored message is returned as is; if that row is malformed
        the message is reported and ``None`` is returned.
        """
        existing = await self.db.scalar(
            select(Message).where(Message.chat_id == chat_id, Message.source_id == str(source_id))
        )
        if existing is not None:
            logger.debug("Message %s/%s already stored, skipping", chat_id, source_id)
            return _validated(StoredMessage, existing, "message"), False

        importance = clamp_logged(importance, 0.0, 1.0, "message.importance")

        row = Message(
            chat_id=chat_id,
            source_id=str(source_id),
            author=author,
            content=content,
            search_text=content.lower(),
            timestamp=ensure_utc(timestamp),
            message_type=message_type,
            from_agent=from_agent,
            importance=importance,
            emotion=emotion,
            topics=list(topics or []),
            mentions=list(mentions or []),
        )
        self.db.add(row)
        await self.db.flush()
        self._invalidate(chat_id, "memory")
        return StoredMessage.model_validate(row), True

    async def recent_messages(self, chat_id: str, limit: int = 25) -> list[StoredMessage]:
        """Last ``limit`` messages in chronological order."""

        async def _load() -> list[StoredMessage]:
            rows = (await self.db.scalars(
                select(Message)
                .where(Message.chat_id == chat_id)
                .order_by(Message.timestamp.desc(), Message.id.desc())
                .limit(limit)
            )).all()
            return _validated_all(StoredMessage, reversed(rows), "message")

        return await self._cached("memory", f"{chat_id}:recent:{limit}", _load)

    async def user_messages(self, chat_id: str, author: str, limit: int = 100) -> list[StoredMessage]:
        """Last ``limit`` messages from one author, chronological."""
        rows = (await self.db.scalars(
            select(Message)
            .where(Message.chat_id == chat_id, Message.author == author)
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(limit)
        )).all()
        return _validated_all(StoredMessage, reversed(rows), "message")

    async def messages_since(
        self, chat_id: str, since: datetime, *, include_agent: bool = True
    ) -> list[StoredMessage]:
        stmt = select(Message).where(Message.chat_id == chat_id, Message.timestamp >= ensure_utc(since))
        if not include_agent:
            stmt = stmt.where(Message.from_agent.is_(False))
        rows = (await self.db.scalars(stmt.order_by(Message.timestamp, Message.id))).all()
        return _validated_all(StoredMessage, rows, "message")

    async def activity_timestamps(self, chat_id: str, since: datetime) -> list[datetime]:
        """Timestamps of non-agent messages since ``since``."""
        rows = (await self.db.scalars(
            select(Message.timestamp)
            .where(
                Message.chat_id == chat_id,
                Message.from_agent.is_(False),
                Message.timestamp >= ensure_utc(since),
            )
            .order_by(Message.timestamp)
        )).all()
        return list(rows)

    async def last_activity(self, chat_id: str, before: datetime | None = None) -> datetime | None:
        """Latest non-agent message time, optionally strictly before ``before``."""
        stmt = select(func.max(Message.timestamp)).where(
            Message.chat_id == chat_id, Message.from_agent.is_(False)
        )
        if before is not None:
            stmt = stmt.where(Message.timestamp < ensure_utc(before))
        last = await self.db.scalar(stmt)
        return ensure_utc(last) if last is not None else None

    async def last_agent_message(self, chat_id: str) -> StoredMessage | None:
        row = await self.db.scalar(
            select(Message)
            .where(Message.chat_id == chat_id, Message.from_agent.is_(True))
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(1)
        )
        return _validated(StoredMessage, row, "message") if row is not None else None

    async def count_messages(self, chat_id: str, *, since: datetime | None = None, include_agent: bool = True) -> int:
        stmt = select(func.count(Message.id)).where(Message.chat_id == chat_id)
        if since is not None:
            stmt = stmt.where(Message.timestamp > ensure_utc(since))
        if not include_agent:
            stmt = stmt.where(Message.from_agent.is_(False))
        return int(await self.db.scalar(stmt) or 0)

    async def relevant_messages(
        self,
        chat_id: str,
        keywords: Sequence[str],
        *,
        now: datetime,
        memory_days: int = 30,
        limit: int = 10,
        exclude_ids: Sequence[int] = (),
        min_score: float = 0.0,
    ) -> list[StoredMessage]:
        """Keyword-matched history within ``memory_days``.

        The relevance score is the stored importance plus ``RELEVANCE_BOOST``
        when the message contains the leading keyword. Ranking happens in SQL
        by score, then recency; the boost is never written back. Messages
        scoring below ``min_score`` are left out.
        """
        keywords = [k.lower() for k in keywords if k]
        if not keywords:
            return []
        cutoff = ensure_utc(now) - timedelta(days=memory_days)
        conditions = [Message.search_text.contains(kw, autoescape=True) for kw in keywords]
        score = Message.importance + case((conditions[0], RELEVANCE_BOOST), else_=0.0)
        stmt = (
            select(Message)
            .where(
                Message.chat_id == chat_id,
                Message.timestamp >= cutoff,
                or_(*conditions),
                *([Message.id.not_in(list(exclude_ids))] if exclude_ids else []),
            )
            .order_by(score.desc(), Message.timestamp.desc())
            .limit(limit)
        )
        if min_score > 0:
            stmt = stmt.where(score >= min_score)
        rows = (await self.db.scalars(stmt)).all()
        return _validated_all(StoredMessage, rows, "message")

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    async def upsert_topic(self, chat_id: str, topic: str, author: str, now: datetime) -> TopicView:
        topic = topic.lower().strip()
        row = await self.db.scalar(
            select(ChatTopic).where(ChatTopic.chat_id == chat_id, ChatTopic.topic == topic)
        )
        now = ensure_utc(now)
        if row is None:
            row = ChatTopic(
                chat_id=chat_id,
                topic=topic,
                first_mentioned=now,
                last_mentioned=now,
                mention_count=1,
                related_users=[author],
                importance=0.5,
                status="active",
            )
            self.db.add(row)
        else:
            row.mention_count = (row.mention_count or 0) + 1
            row.importance = min(1.0, (row.importance or 0.0) + 0.1)
            row.last_mentioned = now
            row.status = "active"
            users = list(row.related_users or [])
            if author not in users:
                row.related_users = users + [author]
        await self.db.flush()
        self._invalidate(chat_id, "topics", "memory")
        return TopicView.model_validate(row)

    async def active_topics(self, chat_id: str, limit: int = 10) -> list[TopicView]:
        async def _load() -> list[TopicView]:
            rows = (await self.db.scalars(
                select(ChatTopic)
                .where(ChatTopic.chat_id == chat_id, ChatTopic.status == "active")
                .order_by(ChatTopic.importance.desc(), ChatTopic.last_mentioned.desc())
                .limit(limit)
            )).all()
            return _validated_all(TopicView, rows, "topic")

        return await self._cached("topics", f"{chat_id}:active:{limit}", _load)

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def get_relationship(self, chat_id: str, user_name: str) -> RelationshipView | None:
        row = await self.db.scalar(
            select(UserRelationship).where(
                UserRelationship.chat_id == chat_id, UserRelationship.user_name == user_name
            )
        )
        return _validated(RelationshipView, row, "relationship") if row is not None else None

    async def update_relationship(
        self,
        chat_id: str,
        user_name: str,
        now: datetime,
        *,
        mood: str | None = None,
        topics: Sequence[str] = (),
    ) -> RelationshipView:
        """Record an interaction. The day counter moves at most once per calendar day."""
        now = ensure_utc(now)
        row = await self.db.scalar(
            select(UserRelationship).where(
                UserRelationship.chat_id == chat_id, UserRelationship.user_name == user_name
            )
        )
        if row is None:
            row = UserRelationship(
                chat_id=chat_id,
                user_name=user_name,
                kind="unknown",
                last_interaction=now,
                interaction_count=1,
                common_topics=list(topics)[:MAX_COMMON_TOPICS],
                mood=mood or "neutral",
            )
            self.db.add(row)
        else:
            if local_date(now, self._tz) != local_date(row.last_interaction, self._tz):
                row.interaction_count = (row.interaction_count or 0) + 1
            row.last_interaction = now
            if mood:
                row.mood = mood
            if topics:
                merged = list(dict.fromkeys(list(row.common_topics or []) + list(topics)))
                row.common_topics = merged[-MAX_COMMON_TOPICS:]
        await self.db.flush()
        self._invalidate(chat_id, "memory")
        return RelationshipView.model_validate(row)

    async def fix_interaction_counts(self, chat_id: str) -> int:
        """Recompute every day counter of the chat from the message log."""
        rows = (await self.db.execute(
            select(Message.author, Message.timestamp).where(
                Message.chat_id == chat_id, Message.from_agent.is_(False)
            )
        )).all()
        days: dict[str, set] = defaultdict(set)
        for author, ts in rows:
            days[author].add(local_date(ts, self._tz))

        fixed = 0
        relationships = (await self.db.scalars(
            select(UserRelationship).where(UserRelationship.chat_id == chat_id)
        )).all()
        for rel in relationships:
            count = len(days.get(rel.user_name, ())) or 1
            if rel.interaction_count != count:
                logger.info(
                    "Fixing interaction count for %s in %s: %d -> %d",
                    rel.user_name, chat_id, rel.interaction_count, count,
                )
                rel.interaction_count = count
                fixed += 1
        await self.db.flush()
        self._invalidate(chat_id, "memory")
        return fixed

    # ------------------------------------------------------------------
    # Context assembly
    # ------------------------------------------------------------------

    def extract_keywords(self, text: str, limit: int = 5) -> list[str]:
        return extract_keywords(text, self._lexicon.keyword_stopwords, limit)

    async def build_context(
        self,
        chat_id: str,
        text: str,
        author: str,
        *,
        now: datetime,
        recent_limit: int = 5,
        relevant_limit: int = 5,
        memory_days: int = 30,
        min_relevance: float = 0.0,
    ) -> MemoryContext:
        """Assemble recent window, relevant history, topics and relationship."""

        async def _load() -> MemoryContext:
            recent = await self.recent_messages(chat_id, recent_limit)
            keywords = self.extract_keywords(text)
            relevant = await self.relevant_messages(
                chat_id,
                keywords,
                now=now,
                memory_days=memory_days,
                limit=relevant_limit,
                exclude_ids=[m.id for m in recent if m.id is not None],
                min_score=min_relevance,
            )
            return MemoryContext(
                chat_id=chat_id,
                recent_messages=recent,
                relevant_messages=relevant,
                active_topics=await self.active_topics(chat_id, 5),
                relationship=await self.get_relationship(chat_id, author),
                keywords=keywords,
                current_mood=mood_from_tags([m.emotion for m in recent]),
            )

        key = f"{chat_id}:context:{author}:{normalize_text(text)}"
        return await self._cached("memory", key, _load)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup(self, now: datetime, memory_days: int = 30, chat_id: str | None = None) -> dict[str, int]:
        """Delete old low-importance messages and archive stale topics."""
        now = ensure_utc(now)
        message_cutoff = now - timedelta(days=memory_days)
        topic_cutoff = now - timedelta(days=memory_days // 2)

        msg_stmt = delete(Message).where(
            Message.timestamp < message_cutoff, Message.importance < RETAIN_IMPORTANCE
        )
        topic_stmt = (
            update(ChatTopic)
            .where(ChatTopic.status == "active", ChatTopic.last_mentioned < topic_cutoff)
            .values(status="archived")
        )
        if chat_id is not None:
            msg_stmt = msg_stmt.where(Message.chat_id == chat_id)
            topic_stmt = topic_stmt.where(ChatTopic.chat_id == chat_id)

        deleted = (await self.db.execute(msg_stmt)).rowcount or 0
        archived = (await self.db.execute(topic_stmt)).rowcount or 0
        await self.db.flush()
        if deleted or archived:
            logger.info("Retention sweep: deleted %d messages, archived %d topics", deleted, archived)
            if self._caches is not None:
                if chat_id is None:
                    self._caches.clear()
                else:
                    self._caches.invalidate_chat(chat_id)
        return {"messages_deleted": deleted, "topics_archived": archived}

    async def stats(self, chat_id: str) -> dict:
        total = await self.count_messages(chat_id)
        users = await self.db.scalar(
            select(func.count(UserRelationship.id)).where(UserRelationship.chat_id == chat_id)
        )
        topics = await self.db.scalar(
            select(func.count(ChatTopic.id)).where(ChatTopic.chat_id == chat_id, ChatTopic.status == "active")
        )
        bounds = (await self.db.execute(
            select(func.min(Message.timestamp), func.max(Message.timestamp)).where(Message.chat_id == chat_id)
        )).one()
        return {
            "total_messages": total,
            "total_users": int(users or 0),
            "active_topics": int(topics or 0),
            "oldest_message": bounds[0],
            "newest_message": bounds[1],
        }

    # ------------------------------------------------------------------
    # Cache plumbing
    # ------------------------------------------------------------------

    async def _cached(self, cache_name: str, key: str, loader):
        if self._caches is None:
            return await loader()
        return await self._caches.get(cache_name).get_or_compute(key, loader)

    def _invalidate(self, chat_id: str, *cache_names: str) -> None:
        if self._caches is not None:
            self._caches.invalidate_chat(chat_id, list(cache_names))
