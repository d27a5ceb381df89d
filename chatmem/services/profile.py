"""Per-user emotional profiles.

``ProfileBuilder`` is a pure aggregation over a user's scored history. The
profile is always rebuilt from scratch, so the same history yields the same
profile. ``ProfileService`` persists the latest build and reads it back
through the profiles cache.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatmem.core.clock import ensure_utc
from chatmem.core.errors import report_integrity
from chatmem.models.emotional_state import EmotionalProfileRecord
from chatmem.schemas import EmotionalProfile, EmotionScore, MoodEntry, RelationshipView, StoredMessage
from chatmem.services.cache import CacheRegistry
from chatmem.services.emotion import NEUTRAL, EmotionScorer
from chatmem.services.memory import MemoryStore

logger = logging.getLogger(__name__)

MIN_MESSAGES = 5
MAX_MESSAGES = 100
RECENT_MOODS = 10


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _variance(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    m = _mean(values)
    return sum((v - m) ** 2 for v in values) / len(values)


class ProfileBuilder:
    """Build an ``EmotionalProfile`` from one user's chronological messages."""

    def __init__(self, scorer: EmotionScorer, max_messages: int = MAX_MESSAGES):
        self.scorer = scorer
        self.max_messages = max_messages

    def build(
        self,
        user_name: str,
        messages: Sequence[StoredMessage],
        relationship: RelationshipView | None = None,
    ) -> EmotionalProfile | None:
        messages = list(messages)[-self.max_messages:]
        if len(messages) < MIN_MESSAGES:
            return None

        scores = [self.scorer.score(m.content) for m in messages]
        avg_valence = _mean([s.valence for s in scores])
        avg_arousal = _mean([s.arousal for s in scores])

        return EmotionalProfile(
            user_name=user_name,
            temperament=self._temperament(avg_valence, avg_arousal),
            expressiveness=min(_mean([s.intensity for s in scores]) * 1.2, 1.0),
            stability=max(0.0, 1.0 - _variance([s.valence for s in scores])),
            typical_emotions=self._typical_emotions(scores),
            social_role=self._social_role(scores, messages),
            recent_moods=[
                MoodEntry(
                    timestamp=m.timestamp,
                    dominant=s.dominant,
                    intensity=s.intensity,
                    context=m.content[:50],
                )
                for m, s in list(zip(messages, scores))[-RECENT_MOODS:]
            ],
            avg_valence=avg_valence,
            avg_arousal=avg_arousal,
            message_count=len(messages),
            relationship_kind=relationship.kind if relationship else None,
        )

    @staticmethod
    def _temperament(valence: float, arousal: float) -> str:
        if valence > 0.2 and arousal > 0.6:
            return "sanguine"
        if valence < -0.2 and arousal > 0.6:
            return "choleric"
        if valence < -0.2 and arousal < 0.4:
            return "melancholic"
        return "phlegmatic"

    @staticmethod
    def _typical_emotions(scores: Sequence[EmotionScore]) -> list[str]:
        counts = Counter(s.dominant for s in scores if s.dominant != NEUTRAL)
        # Counter.most_common keeps first-seen order for ties
        return [emotion for emotion, _ in counts.most_common(3)]

    @staticmethod
    def _social_role(scores: Sequence[EmotionScore], messages: Sequence[StoredMessage]) -> str:
        if _mean([s.social.playful for s in scores]) > 0.4:
            return "entertainer"
        if _mean([s.social.supportive for s in scores]) > 0.4:
            return "supporter"
        if _mean([s.social.hostile for s in scores]) > 0.3:
            return "challenger"
        if _mean([len(m.content) for m in messages]) > 100:
            return "leader"
        if len(messages) < 10:
            return "observer"
        return "mediator"


class ProfileService:
    """Rebuild, persist and read back emotional profiles."""

    def __init__(
        self,
        db: AsyncSession,
        builder: ProfileBuilder,
        store: MemoryStore,
        caches: CacheRegistry | None = None,
    ):
        self.db = db
        self.builder = builder
        self.store = store
        self._caches = caches

    async def rebuild(self, chat_id: str, user_name: str, now: datetime) -> EmotionalProfile | None:
        """Recompute the profile from the user's last messages and replace the stored one."""
        history = [
            m for m in await self.store.user_messages(chat_id, user_name, self.builder.max_messages)
            if not m.from_agent
        ]
        relationship = await self.store.get_relationship(chat_id, user_name)
        profile = self.builder.build(user_name, history, relationship)
        if profile is None:
            logger.debug("Profile for %s in %s skipped: %d messages", user_name, chat_id, len(history))
            return None

        row = await self.db.scalar(
            select(EmotionalProfileRecord).where(
                EmotionalProfileRecord.chat_id == chat_id,
                EmotionalProfileRecord.user_name == user_name,
            )
        )
        payload = profile.model_dump(mode="json")
        if row is None:
            row = EmotionalProfileRecord(chat_id=chat_id, user_name=user_name, payload=payload,
                                         source_count=profile.message_count, built_at=ensure_utc(now))
            self.db.add(row)
        else:
            row.payload = payload
            row.source_count = profile.message_count
            row.built_at = ensure_utc(now)
        await self.db.flush()

        if self._caches is not None:
            self._caches.profiles.delete(self._key(chat_id, user_name))
        logger.info(
            "Profile rebuilt for %s: temperament=%s role=%s (%d msgs)",
            user_name, profile.temperament, profile.social_role, profile.message_count,
        )
        return profile

    async def get(self, chat_id: str, user_name: str) -> EmotionalProfile | None:
        if self._caches is None:
            return await self._load(chat_id, user_name)
        return await self._caches.profiles.get_or_compute(
            self._key(chat_id, user_name), lambda: self._load(chat_id, user_name)
        )

    async def get_many(self, chat_id: str, user_names: Sequence[str]) -> dict[str, EmotionalProfile]:
        profiles = {}
        for name in dict.fromkeys(user_names):
            profile = await self.get(chat_id, name)
            if profile is not None:
                profiles[name] = profile
        return profiles

    async def _load(self, chat_id: str, user_name: str) -> EmotionalProfile | None:
        row = await self.db.scalar(
            select(EmotionalProfileRecord).where(
                EmotionalProfileRecord.chat_id == chat_id,
                EmotionalProfileRecord.user_name == user_name,
            )
        )
        if row is None:
            return None
        try:
            return EmotionalProfile.model_validate(row.payload)
        except ValidationError as e:
            report_integrity("malformed profile payload for %s/%s: %s", chat_id, user_name, e.errors()[:1])
            return None

    @staticmethod
    def _key(chat_id: str, user_name: str) -> str:
        return f"{chat_id}:profile:{user_name}"
