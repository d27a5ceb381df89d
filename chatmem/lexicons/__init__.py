"""Word lists used by the heuristic scorers, shipped as JSON data.

Scorers never hard-code vocabulary: they receive one of the lexicon models
below, so tests can pass synthetic lexicons and deployments can ship another
language.

Term matching rules (see ``TermSet``):
- terms starting with a word character match at a word start, so
  ``расстроен`` also matches ``расстроена``;
- alphabetic terms of three characters or fewer must match a whole word, so
  ``да`` does not fire inside ``когда``;
- anything else (emoji, ``+1``, ``/s``) matches as a plain substring.
"""

from __future__ import annotations

import re
from functools import lru_cache
from importlib import resources
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from chatmem.core.errors import ConfigurationError
from chatmem.schemas import CONTEXTUAL_DIMENSIONS, PRIMARY_DIMENSIONS, SOCIAL_DIMENSIONS, EventType

_SHORT_TERM = 3


def _compile_term(term: str) -> re.Pattern[str]:
    escaped = re.escape(term)
    if not term or not (term[0].isalnum() or term[0] == "_"):
        return re.compile(escaped)
    if len(term) <= _SHORT_TERM and term.isalpha():
        return re.compile(rf"(?<!\w){escaped}(?!\w)")
    return re.compile(rf"(?<!\w){escaped}")


class TermSet:
    """Compiled set of lexicon terms; ``hits`` returns the distinct terms found."""

    __slots__ = ("terms", "_patterns")

    def __init__(self, terms: list[str]):
        self.terms = [t.lower() for t in terms if t]
        self._patterns = [(t, _compile_term(t)) for t in self.terms]

    def hits(self, text: str) -> list[str]:
        return [t for t, p in self._patterns if p.search(text)]

    def count(self, text: str) -> int:
        return sum(1 for _, p in self._patterns if p.search(text))

    def any(self, text: str) -> bool:
        return any(p.search(text) for _, p in self._patterns)

    def __len__(self) -> int:
        return len(self.terms)


def _lower_lists(value: dict[str, list[str]]) -> dict[str, list[str]]:
    return {k: [t.lower() for t in v] for k, v in value.items()}


class EmotionLexicon(BaseModel):
    language: str = "custom"
    primary: dict[str, list[str]] = Field(default_factory=dict)
    social: dict[str, list[str]] = Field(default_factory=dict)
    contextual: dict[str, list[str]] = Field(default_factory=dict)
    dispute_markers: list[str] = Field(default_factory=list)
    laughter_pattern: str = "ха+"

    @field_validator("primary")
    @classmethod
    def _check_primary(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return _check_dimensions(v, PRIMARY_DIMENSIONS)

    @field_validator("social")
    @classmethod
    def _check_social(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return _check_dimensions(v, SOCIAL_DIMENSIONS)

    @field_validator("contextual")
    @classmethod
    def _check_contextual(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return _check_dimensions(v, CONTEXTUAL_DIMENSIONS)

    @field_validator("laughter_pattern")
    @classmethod
    def _check_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid laughter_pattern: {e}") from e
        return v


def _check_dimensions(value: dict[str, list[str]], allowed: tuple[str, ...]) -> dict[str, list[str]]:
    unknown = set(value) - set(allowed)
    if unknown:
        raise ValueError(f"unknown dimensions: {sorted(unknown)}")
    return _lower_lists(value)


class EventTemplate(BaseModel):
    """One event kind. Each list entry is a concept: a group of variant spellings."""

    event_type: EventType
    keywords: list[list[str]] = Field(min_length=1)
    markers: list[list[str]] = Field(default_factory=list)
    clues: list[list[str]] = Field(default_factory=list)
    min_importance: float = Field(ge=0.0, le=1.0)

    @field_validator("keywords", "markers", "clues", mode="before")
    @classmethod
    def _coerce_groups(cls, v):
        if not isinstance(v, list):
            return v
        return [[item] if isinstance(item, str) else item for item in v]

    @field_validator("keywords", "markers", "clues")
    @classmethod
    def _lower_groups(cls, v: list[list[str]]) -> list[list[str]]:
        return [[t.lower() for t in group] for group in v if group]


class EventLexicon(BaseModel):
    language: str = "custom"
    templates: list[EventTemplate] = Field(min_length=1)


class FallbackPattern(BaseModel):
    id: str
    keywords: list[str] = Field(min_length=1)
    responses: list[str] = Field(min_length=1)
    weight: float = Field(1.0, gt=0)


class ConversationLexicon(BaseModel):
    language: str = "custom"
    keyword_stopwords: list[str] = Field(default_factory=list)
    topic_stopwords: list[str] = Field(default_factory=list)
    emotion_tags: dict[str, list[str]] = Field(default_factory=dict)
    situations: dict[str, list[str]] = Field(default_factory=dict)
    cacheable_patterns: list[str] = Field(default_factory=list)
    fallback_patterns: list[FallbackPattern] = Field(default_factory=list)

    @field_validator("emotion_tags", "situations")
    @classmethod
    def _lower(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return _lower_lists(v)


def _read_asset(name: str) -> str:
    try:
        return resources.files(__package__).joinpath(f"{name}.json").read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigurationError(f"Lexicon asset {name!r} not found") from e


def _parse(model: type[BaseModel], raw: str, source: str):
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid lexicon {source}: {e}") from e


@lru_cache
def load_emotion_lexicon(name: str = "emotions_ru") -> EmotionLexicon:
    return _parse(EmotionLexicon, _read_asset(name), name)


@lru_cache
def load_event_lexicon(name: str = "events_ru") -> EventLexicon:
    return _parse(EventLexicon, _read_asset(name), name)


@lru_cache
def load_conversation_lexicon(name: str = "conversation_ru") -> ConversationLexicon:
    return _parse(ConversationLexicon, _read_asset(name), name)


def load_lexicon_file(model: type[BaseModel], path: str | Path):
    """Load a lexicon of the given model type from an arbitrary JSON file."""
    path = Path(path)
    return _parse(model, path.read_text(encoding="utf-8"), str(path))


__all__ = [
    "TermSet",
    "EmotionLexicon",
    "EventTemplate",
    "EventLexicon",
    "FallbackPattern",
    "ConversationLexicon",
    "load_emotion_lexicon",
    "load_event_lexicon",
    "load_conversation_lexicon",
    "load_lexicon_file",
]
