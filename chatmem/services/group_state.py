"""Group emotional state: mood, dynamics and conflicts over a recent window."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatmem.core.clock import ensure_utc
from chatmem.core.errors import report_integrity
from chatmem.models.emotional_state import GroupStateSnapshot
from chatmem.schemas import Conflict, EmotionalTopic, EmotionScore, GroupEmotionalState, StoredMessage
from chatmem.services.emotion import NEUTRAL, EmotionScorer
from chatmem.services.memory import MemoryStore

logger = logging.getLogger(__name__)

WINDOW = 50
MIN_MESSAGES = 5
REFRESH_INTERVAL = timedelta(minutes=10)
HOSTILE_THRESHOLD = 0.3

# carried-over conflict not seen again: active -> cooling -> resolved
_DECAY = {"active": "cooling", "cooling": "resolved"}


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class GroupStateAggregator:
    """Pure aggregation of per-message scores into a ``GroupEmotionalState``."""

    def __init__(self, scorer: EmotionScorer, window: int = WINDOW):
        self.scorer = scorer
        self.window = window

    def aggregate(
        self,
        messages: Sequence[StoredMessage],
        previous: GroupEmotionalState | None = None,
        now: datetime | None = None,
    ) -> GroupEmotionalState:
        messages = list(messages)[-self.window:]
        if not messages:
            return GroupEmotionalState(computed_at=now)

        scores = [self.scorer.score(m.content) for m in messages]
        dominants = [s.dominant for s in scores]
        mood = Counter(dominants).most_common(1)[0][0]

        hostile = _mean([s.social.hostile for s in scores])
        avg_len = _mean([len(m.content) for m in messages])
        authors = {m.author for m in messages}

        return GroupEmotionalState(
            dominant_mood=mood,
            intensity=_mean([s.intensity for s in scores]),
            stability=max(0.0, 1.0 - 0.2 * (len(set(dominants)) - 1)),
            harmony=min(1.0, max(0.0, _mean([s.social.friendly for s in scores])
                                 + _mean([s.social.supportive for s in scores]) - hostile)),
            tension=min(1.0, hostile + _mean([s.contextual.stress for s in scores])),
            energy=min(1.0, _mean([s.intensity for s in scores])),
            engagement=min(1.0, len(authors) * 0.2 + min(avg_len / 50, 1.0) * 0.4),
            emotional_topics=self._emotional_topics(messages, scores),
            conflicts=self._conflicts(messages, scores, previous.conflicts if previous else []),
            message_count=len(messages),
            computed_at=now,
        )

    @staticmethod
    def _emotional_topics(messages: Sequence[StoredMessage], scores: Sequence[EmotionScore]) -> list[EmotionalTopic]:
        topics: dict[str, EmotionalTopic] = {}
        for msg, score in zip(messages, scores):
            if score.dominant == NEUTRAL:
                continue
            for topic in msg.topics:
                entry = topics.get(topic)
                if entry is None:
                    topics[topic] = EmotionalTopic(
                        topic=topic, emotion=score.dominant, intensity=score.intensity, participants=[msg.author]
                    )
                    continue
                entry.intensity = max(entry.intensity, score.intensity)
                if msg.author not in entry.participants:
                    entry.participants.append(msg.author)
        return list(topics.values())

    @staticmethod
    def _conflicts(
        messages: Sequence[StoredMessage],
        scores: Sequence[EmotionScore],
        carried: Sequence[Conflict],
    ) -> list[Conflict]:
        open_conflicts = {c.key(): c.model_copy(deep=True) for c in carried if c.status != "resolved"}
        seen: set[frozenset[str]] = set()

        for i in range(1, len(messages)):
            prev_msg, cur_msg = messages[i - 1], messages[i]
            prev_h, cur_h = scores[i - 1].social.hostile, scores[i].social.hostile
            if prev_h <= HOSTILE_THRESHOLD or cur_h <= HOSTILE_THRESHOLD or prev_msg.author == cur_msg.author:
                continue
            key = frozenset((prev_msg.author, cur_msg.author))
            intensity = (prev_h + cur_h) / 2
            if key in open_conflicts:
                if key not in seen:
                    conflict = open_conflicts[key]
                    conflict.status = "active"
                    conflict.intensity = max(conflict.intensity, intensity)
                    conflict.last_seen = cur_msg.timestamp
            else:
                shared = [t for t in prev_msg.topics if t in cur_msg.topics]
                open_conflicts[key] = Conflict(
                    participants=[prev_msg.author, cur_msg.author],
                    topic=shared[0] if shared else (cur_msg.topics[0] if cur_msg.topics else ""),
                    intensity=intensity,
                    status="active",
                    first_detected=prev_msg.timestamp,
                    last_seen=cur_msg.timestamp,
                )
            seen.add(key)

        result = []
        for key, conflict in open_conflicts.items():
            if key not in seen:
                conflict.status = _DECAY.get(conflict.status, "resolved")
                if conflict.status == "resolved":
                    logger.debug("Conflict between %s resolved", ", ".join(conflict.participants))
                    continue
            result.append(conflict)
        return result


class GroupStateService:
    """Rate-limited recompute with an append-only snapshot series."""

    def __init__(
        self,
        db: AsyncSession,
        aggregator: GroupStateAggregator,
        store: MemoryStore,
        refresh_interval: timedelta = REFRESH_INTERVAL,
    ):
        self.db = db
        self.aggregator = aggregator
        self.store = store
        self.refresh_interval = refresh_interval

    async def refresh(self, chat_id: str, now: datetime) -> GroupEmotionalState | None:
        """Recompute unless a snapshot younger than the refresh interval exists.

        Returns None while the chat has fewer than 5 messages.
        """
        now = ensure_utc(now)
        latest = await self.latest(chat_id)
        if latest is not None and latest.computed_at is not None and now - latest.computed_at < self.refresh_interval:
            return latest

        messages = await self.store.recent_messages(chat_id, self.aggregator.window)
        if len(messages) < MIN_MESSAGES:
            return None

        state = self.aggregator.aggregate(messages, previous=latest, now=now)
        self.db.add(GroupStateSnapshot(
            chat_id=chat_id,
            computed_at=now,
            message_count=state.message_count,
            payload=state.model_dump(mode="json"),
        ))
        await self.db.flush()
        logger.info(
            "Group state for %s: mood=%s harmony=%.2f tension=%.2f conflicts=%d",
            chat_id, state.dominant_mood, state.harmony, state.tension, len(state.active_conflicts),
        )
        return state

    async def latest(self, chat_id: str) -> GroupEmotionalState | None:
        rows = await self.history(chat_id, limit=1)
        return rows[0] if rows else None

    async def history(self, chat_id: str, limit: int = 20) -> list[GroupEmotionalState]:
        """Most recent snapshots first. Malformed snapshots are skipped."""
        rows = (await self.db.scalars(
            select(GroupStateSnapshot)
            .where(GroupStateSnapshot.chat_id == chat_id)
            .order_by(GroupStateSnapshot.computed_at.desc(), GroupStateSnapshot.id.desc())
            .limit(limit)
        )).all()
        states = []
        for row in rows:
            try:
                state = GroupEmotionalState.model_validate(row.payload)
            except ValidationError as e:
                report_integrity("malformed group snapshot id=%s: %s", row.id, e.errors()[:1])
                continue
            if state.computed_at is None:
                state.computed_at = row.computed_at
            states.append(state)
        return states
