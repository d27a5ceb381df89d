"""Typed records exchanged between services.

Everything read back from a JSON column or handed to a collaborator goes
through one of these models.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Temperament = Literal["sanguine", "choleric", "melancholic", "phlegmatic"]
SocialRole = Literal["entertainer", "supporter", "challenger", "leader", "mediator", "observer"]
Tone = Literal["supportive", "playful", "serious", "neutral", "calming", "energetic"]
TrendDirection = Literal["improving", "worsening", "stable"]
ActivityTrend = Literal["increasing", "decreasing", "stable"]
ConflictStatus = Literal["active", "cooling", "resolved"]
RepetitionLevel = Literal["none", "mild", "moderate", "high"]
EventType = Literal[
    "celebration",
    "conflict",
    "departure",
    "funny_moment",
    "decision",
    "revelation",
    "milestone",
    "topic_shift",
    "shared_experience",
    "tradition",
]

PRIMARY_DIMENSIONS = ("joy", "sadness", "anger", "fear", "surprise", "disgust", "trust", "anticipation")
SOCIAL_DIMENSIONS = ("friendly", "hostile", "sarcastic", "supportive", "playful", "serious")
CONTEXTUAL_DIMENSIONS = ("enthusiasm", "boredom", "stress", "curiosity", "confidence", "uncertainty")


# ---------------------------------------------------------------------------
# Emotion
# ---------------------------------------------------------------------------


class PrimaryEmotions(BaseModel):
    joy: float = 0.0
    sadness: float = 0.0
    anger: float = 0.0
    fear: float = 0.0
    surprise: float = 0.0
    disgust: float = 0.0
    trust: float = 0.0
    anticipation: float = 0.0


class SocialEmotions(BaseModel):
    friendly: float = 0.0
    hostile: float = 0.0
    sarcastic: float = 0.0
    supportive: float = 0.0
    playful: float = 0.0
    serious: float = 0.0


class ContextualEmotions(BaseModel):
    enthusiasm: float = 0.0
    boredom: float = 0.0
    stress: float = 0.0
    curiosity: float = 0.0
    confidence: float = 0.0
    uncertainty: float = 0.0


class EmotionScore(BaseModel):
    primary: PrimaryEmotions = Field(default_factory=PrimaryEmotions)
    social: SocialEmotions = Field(default_factory=SocialEmotions)
    contextual: ContextualEmotions = Field(default_factory=ContextualEmotions)
    dominant: str = "neutral"
    intensity: float = 0.0
    valence: float = 0.0
    arousal: float = 0.0
    confidence: float = 0.0

    def dimensions(self) -> dict[str, float]:
        """All 20 dimensions in declaration order."""
        return {**self.primary.model_dump(), **self.social.model_dump(), **self.contextual.model_dump()}


# ---------------------------------------------------------------------------
# Profiles and group state
# ---------------------------------------------------------------------------


class MoodEntry(BaseModel):
    timestamp: datetime
    dominant: str
    intensity: float
    context: str = ""


class EmotionalProfile(BaseModel):
    user_name: str
    temperament: Temperament
    expressiveness: float = Field(ge=0.0, le=1.0)
    stability: float = Field(ge=0.0, le=1.0)
    typical_emotions: list[str] = Field(default_factory=list, max_length=3)
    social_role: SocialRole
    recent_moods: list[MoodEntry] = Field(default_factory=list, max_length=10)
    avg_valence: float = 0.0
    avg_arousal: float = 0.0
    message_count: int = 0
    relationship_kind: str | None = None


class EmotionalTopic(BaseModel):
    topic: str
    emotion: str
    intensity: float
    participants: list[str] = Field(default_factory=list)


class Conflict(BaseModel):
    participants: list[str]
    topic: str = ""
    intensity: float = Field(ge=0.0, le=1.0)
    status: ConflictStatus = "active"
    first_detected: datetime
    last_seen: datetime

    def key(self) -> frozenset[str]:
        return frozenset(self.participants)


class GroupEmotionalState(BaseModel):
    dominant_mood: str = "neutral"
    intensity: float = 0.0
    stability: float = 0.5
    harmony: float = Field(0.5, ge=0.0, le=1.0)
    tension: float = Field(0.0, ge=0.0, le=1.0)
    energy: float = Field(0.0, ge=0.0, le=1.0)
    engagement: float = Field(0.0, ge=0.0, le=1.0)
    emotional_topics: list[EmotionalTopic] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    message_count: int = 0
    computed_at: datetime | None = None

    @property
    def active_conflicts(self) -> list[Conflict]:
        return [c for c in self.conflicts if c.status == "active"]


# ---------------------------------------------------------------------------
# Store views
# ---------------------------------------------------------------------------


class StoredMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    chat_id: str
    source_id: str
    author: str
    content: str
    timestamp: datetime
    message_type: str = "text"
    from_agent: bool = False
    importance: float = Field(0.5, ge=0.0, le=1.0)
    emotion: str = "neutral"
    topics: list[str] = Field(default_factory=list)
    mentions: list[str] = Field(default_factory=list)

    @field_validator("topics", "mentions", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return [] if v is None else v


class RelationshipView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    chat_id: str
    user_name: str
    kind: Literal["friend", "colleague", "acquaintance", "unknown"] = "unknown"
    last_interaction: datetime
    interaction_count: int = Field(ge=0)
    common_topics: list[str] = Field(default_factory=list)
    notes: str | None = None
    mood: Literal["positive", "negative", "neutral"] = "neutral"

    @field_validator("common_topics", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return [] if v is None else v


class TopicView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    chat_id: str
    topic: str
    first_mentioned: datetime
    last_mentioned: datetime
    mention_count: int
    related_users: list[str] = Field(default_factory=list)
    importance: float = Field(ge=0.0, le=1.0)
    status: Literal["active", "resolved", "ongoing", "archived"] = "active"

    @field_validator("related_users", mode="before")
    @classmethod
    def _none_to_list(cls, v):
        return [] if v is None else v


class ChatEvent(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    chat_id: str
    event_type: EventType
    timestamp: datetime
    participants: list[str] = Field(default_factory=list)
    title: str
    description: str = ""
    context: str = ""
    importance: float = Field(ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    related_message_ids: list[str] = Field(default_factory=list)
    is_recurring: bool = False
    last_mentioned: datetime | None = None
    mention_count: int = 0


class MemoryContext(BaseModel):
    chat_id: str
    recent_messages: list[StoredMessage] = Field(default_factory=list)
    relevant_messages: list[StoredMessage] = Field(default_factory=list)
    active_topics: list[TopicView] = Field(default_factory=list)
    relationship: RelationshipView | None = None
    keywords: list[str] = Field(default_factory=list)
    current_mood: Literal["positive", "negative", "neutral"] = "neutral"


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


class ActivityPattern(BaseModel):
    hourly: list[int] = Field(default_factory=lambda: [0] * 24, min_length=24, max_length=24)
    weekly: list[int] = Field(default_factory=lambda: [0] * 7, min_length=7, max_length=7)
    trend: ActivityTrend = "stable"
    last_activity: datetime | None = None
    computed_at: datetime | None = None


class ActivityModifiers(BaseModel):
    response_multiplier: float = 1.0
    delay_multiplier: float = 1.0
    is_active_time: bool = True
    inactivity_minutes: float = 0.0


# ---------------------------------------------------------------------------
# Adaptation
# ---------------------------------------------------------------------------


class EmotionTrend(BaseModel):
    dominant: str = "neutral"
    intensity: float = 0.0
    direction: TrendDirection = "stable"


class PromptHints(BaseModel):
    emotional_context: str = ""
    behavior_instructions: str = ""
    avoid_topics: list[str] = Field(default_factory=list)
    emphasize_topics: list[str] = Field(default_factory=list)


class AdaptationDirective(BaseModel):
    tone: Tone = "neutral"
    formality: float = 0.3
    energy: float = 0.5
    empathy: float = 0.5
    humor: float = 0.4
    comfort: bool = False
    deescalate: bool = False
    energize: bool = False
    match_energy: bool = True
    mediate: bool = False
    prompt_hints: PromptHints = Field(default_factory=PromptHints)
    probability_modifier: float = 1.0


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class RepetitionResult(BaseModel):
    count: int = 1
    level: RepetitionLevel = "none"
    similar_messages: list[str] = Field(default_factory=list)


class IncomingMessage(BaseModel):
    chat_id: str
    author: str
    text: str
    message_id: str
    timestamp: datetime
    message_type: Literal["text", "image", "media"] = "text"


class TurnOutcome(BaseModel):
    responded: bool = False
    text: str | None = None
    reason: str = ""
    source: Literal["generation", "cache", "pattern", "none"] = "none"
    sent_message_id: str | None = None
    event: ChatEvent | None = None
    directive: AdaptationDirective | None = None
    repetition: RepetitionResult | None = None
