"""Respond/suppress decision and reply production for one incoming message.

A turn goes Idle -> Evaluating -> Responding or Suppressed -> Idle:

* ``decide`` runs the gates in order (self and denylist suppression, direct
  mention, schedule dampening, anti-spam, probability draw).
* ``prepare`` assembles memory context, profile, group state and events into
  a ``ReplyPlan``.
* ``produce`` calls the generation provider under a timeout and falls back to
  the static patterns. It does not touch the store, so the caller may run it
  outside the database session.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo

from chatmem.core.clock import ensure_utc, sunday_weekday
from chatmem.core.config import Settings
from chatmem.core.errors import TransientIOFailure
from chatmem.lexicons import ConversationLexicon, TermSet, load_conversation_lexicon
from chatmem.providers.llm import GenerationProvider
from chatmem.schemas import (
    AdaptationDirective,
    ChatEvent,
    EmotionalProfile,
    GroupEmotionalState,
    MemoryContext,
    RepetitionResult,
    StoredMessage,
)
from chatmem.services.activity import ActivityTracker
from chatmem.services.adaptation import AdaptationEngine, trend_from_tags
from chatmem.services.cache import GENERATION_TTL, CacheRegistry, generation_cache_key, is_cacheable_input
from chatmem.services.events import EventService
from chatmem.services.group_state import GroupStateService
from chatmem.services.memory import MemoryStore
from chatmem.services.patterns import PatternMatcher
from chatmem.services.profile import ProfileService
from chatmem.services.repetition import RepetitionDetector

logger = logging.getLogger(__name__)

SITUATION_MODIFIERS = {
    "distress": 1.8,
    "conflict": 0.3,
    "celebration": 1.5,
    "technical": 1.2,
    "group_discussion": 0.7,
    "normal": 1.0,
}
_SITUATION_PRIORITY = ("distress", "conflict", "celebration", "technical")

ANTI_SPAM_SECONDS = 180
MIN_INTERVENING = 2
RECENT_WINDOW = 10
GROUP_DISCUSSION_AUTHORS = 3
WARM_HISTORY = 5
LONG_SILENCE_MINUTES = 60
SHORT_SILENCE_MINUTES = 5

_REPETITION_HINTS = {
    "mild": "{author} is repeating themselves ({count}x). Hint that you already answered.",
    "moderate": "{author} keeps repeating the same thing ({count}x). Show slight irritation.",
    "high": "{author} has repeated this {count} times. Tell them off in a friendly way.",
}


class SituationClassifier:
    """Pick one situation for the message, in priority order."""

    def __init__(self, lexicon: ConversationLexicon | None = None):
        lexicon = lexicon or load_conversation_lexicon()
        self._terms = {name: TermSet(lexicon.situations.get(name, [])) for name in _SITUATION_PRIORITY}

    def classify(self, text: str, recent_authors: Sequence[str] = ()) -> str:
        lowered = text.lower()
        for name in _SITUATION_PRIORITY:
            if self._terms[name].any(lowered):
                return name
        if len(set(recent_authors)) >= GROUP_DISCUSSION_AUTHORS:
            return "group_discussion"
        return "normal"


@dataclass
class Decision:
    respond: bool
    reason: str
    probability: float = 0.0
    draw: float | None = None
    situation: str = "normal"
    mention: bool = False
    directive: AdaptationDirective | None = None


@dataclass
class ReplyPlan:
    chat_id: str
    text: str
    author: str
    system_prompt: str
    user_prompt: str
    style_hints: dict = field(default_factory=dict)
    cache_key: str | None = None
    directive: AdaptationDirective | None = None
    repetition: RepetitionResult | None = None
    event_ids: list[int] = field(default_factory=list)


class ResponseEngine:
    """Per-session decision and reply pipeline.

    Store-backed collaborators are bound to the current session; the tracker,
    caches, provider, matcher and RNG are long-lived and shared across turns.
    """

    def __init__(
        self,
        settings: Settings,
        store: MemoryStore,
        profiles: ProfileService,
        group_states: GroupStateService,
        events: EventService,
        tracker: ActivityTracker,
        caches: CacheRegistry,
        *,
        generator: GenerationProvider | None = None,
        matcher: PatternMatcher | None = None,
        adaptation: AdaptationEngine | None = None,
        repetition: RepetitionDetector | None = None,
        situations: SituationClassifier | None = None,
        lexicon: ConversationLexicon | None = None,
        rng: random.Random | None = None,
        tz: tzinfo = timezone.utc,
    ):
        self.settings = settings
        self.store = store
        self.profiles = profiles
        self.group_states = group_states
        self.events = events
        self.tracker = tracker
        self.caches = caches
        self.generator = generator
        self.rng = rng or random.Random(settings.random_seed)
        self.tz = tz
        lexicon = lexicon or load_conversation_lexicon()
        self.matcher = matcher or PatternMatcher(lexicon, self.rng)
        self.adaptation = adaptation or AdaptationEngine()
        self.repetition = repetition or RepetitionDetector()
        self.situations = situations or SituationClassifier(lexicon)

        self._names = {settings.agent_name.lower(), *settings.agent_aliases}
        self._aliases = TermSet(sorted(self._names))
        self._denylist = [re.compile(p, re.IGNORECASE) for p in settings.bot_denylist]
        self._cacheable = [re.compile(p, re.IGNORECASE) for p in lexicon.cacheable_patterns]

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def is_self(self, author: str) -> bool:
        name = author.strip().lower()
        return name in self._names or name == "bot"

    def is_mentioned(self, text: str) -> bool:
        return self._aliases.any(text.lower())

    def is_called_bot(self, text: str) -> bool:
        return any(p.search(text) for p in self._denylist)

    def in_schedule(self, now: datetime) -> bool:
        local = ensure_utc(now).astimezone(self.tz)
        return local.hour in self.settings.active_hours and sunday_weekday(local) in self.settings.active_days

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    async def should_respond(self, chat_id: str, text: str, author: str, now: datetime) -> bool:
        return (await self.decide(chat_id, text, author, now)).respond

    async def decide(
        self,
        chat_id: str,
        text: str,
        author: str,
        now: datetime,
        *,
        source_id: str | None = None,
    ) -> Decision:
        """Run the gates for a message already recorded in the store.

        ``source_id`` identifies that message so it is not counted as history.
        """
        now = ensure_utc(now)
        if self.is_self(author):
            return Decision(False, "self")
        if self.is_called_bot(text):
            logger.info("Suppressed: %s called the agent a bot", author)
            return Decision(False, "called_bot")
        if self.is_mentioned(text):
            return Decision(True, "mention", probability=1.0, mention=True)

        dampening = 1.0 if self.in_schedule(now) else self.settings.schedule_dampening

        last_reply = await self._safe("last reply", self.store.last_agent_message(chat_id))
        if last_reply is not None:
            elapsed = (now - last_reply.timestamp).total_seconds()
            if elapsed < (1 - self.settings.activity_level) * ANTI_SPAM_SECONDS:
                intervening = await self._safe("intervening count", self.store.count_messages(
                    chat_id, since=last_reply.timestamp, include_agent=False
                ))
                if intervening is not None and intervening < MIN_INTERVENING:
                    logger.debug("Suppressed by anti-spam: %.0fs since last reply, %d messages", elapsed, intervening)
                    return Decision(False, "anti_spam")

        recent = await self._safe("recent messages", self.store.recent_messages(chat_id, RECENT_WINDOW)) or []
        history = [m for m in recent if not m.from_agent and m.source_id != source_id]
        situation = self.situations.classify(text, [m.author for m in history])
        probability = self.settings.activity_level * SITUATION_MODIFIERS[situation]

        directive = None
        if len(history) >= WARM_HISTORY:
            directive = await self._directive(chat_id, author, recent, now)
            probability *= directive.probability_modifier
            modifiers = await self._safe(
                "activity modifiers", self.tracker.get_modifiers(self.store, chat_id, now)
            )
            if modifiers is not None:
                multiplier = modifiers.response_multiplier
                if modifiers.inactivity_minutes > LONG_SILENCE_MINUTES:
                    multiplier *= 1.5
                elif modifiers.inactivity_minutes < SHORT_SILENCE_MINUTES:
                    multiplier *= 0.7
                if not modifiers.is_active_time:
                    dampening *= 0.8
                probability *= multiplier

        probability = min(1.0, probability * dampening)
        draw = self.rng.random()
        respond = draw < probability
        logger.debug(
            "Decision for %s: situation=%s p=%.3f draw=%.3f -> %s",
            author, situation, probability, draw, respond,
        )
        return Decision(
            respond,
            "probability" if respond else "probability_miss",
            probability=probability,
            draw=draw,
            situation=situation,
            directive=directive,
        )

    async def _directive(
        self, chat_id: str, author: str, recent: Sequence[StoredMessage], now: datetime
    ) -> AdaptationDirective:
        profile = await self._safe("profile", self.profiles.get(chat_id, author))
        group = await self._safe("group state", self.group_states.refresh(chat_id, now))
        trend = trend_from_tags([m.emotion for m in recent if not m.from_agent])
        return self.adaptation.adapt(profile, group, trend)

    # ------------------------------------------------------------------
    # Reply
    # ------------------------------------------------------------------

    async def generate_response(
        self,
        chat_id: str,
        text: str,
        author: str,
        now: datetime,
        *,
        directive: AdaptationDirective | None = None,
        source_id: str | None = None,
    ) -> tuple[str | None, str, ReplyPlan]:
        plan = await self.prepare(chat_id, text, author, now, directive=directive, source_id=source_id)
        reply, source = await self.produce(plan)
        return reply, source, plan

    async def prepare(
        self,
        chat_id: str,
        text: str,
        author: str,
        now: datetime,
        *,
        directive: AdaptationDirective | None = None,
        source_id: str | None = None,
    ) -> ReplyPlan:
        """Assemble everything the generator needs. Failed lookups leave gaps."""
        now = ensure_utc(now)
        context = await self._safe(
            "memory context",
            self.store.build_context(
                chat_id, text, author, now=now,
                recent_limit=min(self.settings.short_term_limit, RECENT_WINDOW),
                memory_days=self.settings.memory_days,
                min_relevance=self.settings.context_relevance_threshold,
            ),
        ) or MemoryContext(chat_id=chat_id)
        recent = [m for m in context.recent_messages if m.source_id != source_id]

        profile = await self._safe("profile", self.profiles.get(chat_id, author))
        group = await self._safe("group state", self.group_states.refresh(chat_id, now))
        events = await self._safe("events", self.events.relevant(chat_id, context.keywords, 2)) or []
        history = await self._safe("repetition history", self.store.user_messages(
            chat_id, author, self.repetition.window + 1
        )) or []
        repetition = self.repetition.check(text, author, [m for m in history if m.source_id != source_id])

        if directive is None:
            directive = self.adaptation.adapt(
                profile, group, trend_from_tags([m.emotion for m in recent if not m.from_agent])
            )

        cache_key = None
        if self.generator is not None and is_cacheable_input(text, self._cacheable):
            cache_key = generation_cache_key(
                chat_id, text, [(m.author, m.content) for m in recent], self.generator.model
            )

        return ReplyPlan(
            chat_id=chat_id,
            text=text,
            author=author,
            system_prompt=self._system_prompt(context, recent, profile, group, events, directive, repetition, author),
            user_prompt=f"{author}: {text}",
            style_hints={
                "tone": directive.tone,
                "formality": directive.formality,
                "energy": directive.energy,
                "empathy": directive.empathy,
                "humor": directive.humor,
            },
            cache_key=cache_key,
            directive=directive,
            repetition=repetition,
            event_ids=[e.id for e in events if e.id is not None],
        )

    async def produce(self, plan: ReplyPlan) -> tuple[str | None, str]:
        """Return (reply, source) where source is generation, cache, pattern or none."""
        mode = self.settings.ai_mode
        if mode != "patterns_only" and self.generator is not None:
            if plan.cache_key is not None:
                cached = self.caches.ai.get(plan.cache_key)
                if cached:
                    logger.debug("Reply served from cache")
                    return cached, "cache"
            reply = await self._generate(plan)
            if reply:
                if plan.cache_key is not None:
                    self.caches.ai.set(plan.cache_key, reply, GENERATION_TTL)
                return reply, "generation"
            logger.info("No generated reply, falling back to patterns")
        if mode == "ai_only":
            return None, "none"

        match = self.matcher.match(plan.text)
        if match is not None:
            return match.response, "pattern"
        return None, "none"

    async def _generate(self, plan: ReplyPlan) -> str | None:
        timeout = self.settings.generation_timeout
        try:
            reply = await asyncio.wait_for(
                self.generator.generate(plan.system_prompt, plan.user_prompt, plan.style_hints),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Generation timed out after %.1fs", timeout)
            return None
        except Exception as e:
            failure = TransientIOFailure("generate", e)
            logger.warning("%s", failure, exc_info=True)
            return None
        return self._clean(reply)

    def _clean(self, reply: str | None) -> str | None:
        if not reply:
            return None
        reply = reply.strip().strip('"').strip()
        prefix = f"{self.settings.agent_name}:"
        if reply.lower().startswith(prefix.lower()):
            reply = reply[len(prefix):].strip()
        return reply or None

    def _system_prompt(
        self,
        context: MemoryContext,
        recent: Sequence[StoredMessage],
        profile: EmotionalProfile | None,
        group: GroupEmotionalState | None,
        events: Sequence[ChatEvent],
        directive: AdaptationDirective,
        repetition: RepetitionResult,
        author: str,
    ) -> str:
        lines = [
            f"You are {self.settings.agent_name}, a regular member of this group chat.",
            "Reply briefly and naturally, in the language of the conversation.",
        ]
        relationship = context.relationship
        if relationship is not None and relationship.interaction_count > 1:
            lines.append(f"You have talked with {author} on {relationship.interaction_count} different days.")
            if relationship.common_topics:
                lines.append(f"Common topics with {author}: {', '.join(relationship.common_topics[:3])}.")
        if context.relevant_messages:
            best = context.relevant_messages[0]
            lines.append(f'You remember {best.author} saying: "{best.content[:80]}"')
        if context.active_topics:
            lines.append(f"Active topics: {', '.join(t.topic for t in context.active_topics[:3])}.")
        for event in events:
            lines.append(f"Chat memory: {event.title}.")
        hints = directive.prompt_hints
        if hints.emotional_context:
            lines.append(hints.emotional_context)
        if hints.behavior_instructions:
            lines.append(hints.behavior_instructions)
        if hints.avoid_topics:
            lines.append(f"Avoid these topics: {', '.join(hints.avoid_topics)}.")
        if repetition.level in _REPETITION_HINTS:
            lines.append(_REPETITION_HINTS[repetition.level].format(author=author, count=repetition.count))
        if recent:
            lines.append("Recent messages:")
            lines.extend(f"{m.author}: {m.content[:200]}" for m in recent[-3:])
        return "\n".join(lines)

    async def _safe(self, what: str, awaitable):
        """Await a context lookup; on failure log and continue without it."""
        try:
            return await awaitable
        except Exception:
            logger.warning("Context step failed: %s", what, exc_info=True)
            return None
