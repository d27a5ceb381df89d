"""ChatMemory facade - the orchestration root of the engine."""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar
from zoneinfo import ZoneInfo

from chatmem.core.clock import Clock, ensure_utc, utcnow
from chatmem.core.config import Settings, get_settings
from chatmem.core.errors import ConfigurationError
from chatmem.core.logging import chat_id_var, generate_trace_id, setup_logging, trace_id_var
from chatmem.db import Database
from chatmem.lexicons import (
    ConversationLexicon,
    EmotionLexicon,
    EventLexicon,
    load_conversation_lexicon,
    load_emotion_lexicon,
    load_event_lexicon,
)
from chatmem.providers.llm import GenerationProvider
from chatmem.providers.transport import Transport
from chatmem.schemas import (
    EmotionalProfile,
    GroupEmotionalState,
    IncomingMessage,
    MemoryContext,
    StoredMessage,
    TurnOutcome,
)
from chatmem.services.activity import ActivityTracker
from chatmem.services.adaptation import AdaptationEngine
from chatmem.services.cache import CacheRegistry
from chatmem.services.emotion import EmotionScorer, EmotionTagger
from chatmem.services.events import EventDetector, EventService
from chatmem.services.group_state import GroupStateAggregator, GroupStateService
from chatmem.services.memory import Annotation, MemoryStore, MessageAnnotator, mood_from_tags
from chatmem.services.patterns import PatternMatcher
from chatmem.services.profile import ProfileBuilder, ProfileService
from chatmem.services.repetition import RepetitionDetector
from chatmem.services.response import ResponseEngine, SituationClassifier

logger = logging.getLogger(__name__)

CACHE_SWEEP_INTERVAL = 5 * 60
RETENTION_INTERVAL = 60 * 60
ACTIVITY_INTERVAL = 15 * 60
EVENT_WINDOW = 3

T = TypeVar("T")


@dataclass
class _Services:
    """Store-backed services bound to one session."""

    store: MemoryStore
    profiles: ProfileService
    group_states: GroupStateService
    events: EventService
    engine: ResponseEngine


class ChatMemory:
    """Conversational memory and behavioral adaptation engine.

    Owns the database, the cache registry, the per-chat locks and the
    background maintenance tasks. Messages of one chat are processed in
    arrival order; different chats run concurrently.

    Usage:
        memory = ChatMemory(settings, generator=OpenAIGenerator(...), transport=my_transport)
        await memory.init()
        await memory.start()
        outcome = await memory.handle_message(IncomingMessage(...))
        await memory.close()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        generator: GenerationProvider | None = None,
        transport: Transport | None = None,
        clock: Clock = utcnow,
        rng: random.Random | None = None,
        caches: CacheRegistry | None = None,
        emotion_lexicon: EmotionLexicon | None = None,
        event_lexicon: EventLexicon | None = None,
        conversation_lexicon: ConversationLexicon | None = None,
    ):
        self.settings = settings or get_settings()
        try:
            self.tz = ZoneInfo(self.settings.timezone)
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone {self.settings.timezone!r}") from e

        self.db = Database(self.settings.database_url)
        self.caches = caches or CacheRegistry()
        self.generator = generator
        self.transport = transport
        self._clock = clock
        self.rng = rng or random.Random(self.settings.random_seed)

        self._conversation = conversation_lexicon or load_conversation_lexicon()
        self.scorer = EmotionScorer(emotion_lexicon or load_emotion_lexicon())
        self.detector = EventDetector(event_lexicon or load_event_lexicon())
        aliases = [self.settings.agent_name.lower(), *self.settings.agent_aliases]
        self.annotator = MessageAnnotator(
            self._conversation, aliases, EmotionTagger(self._conversation, aliases)
        )
        self.profile_builder = ProfileBuilder(self.scorer, self.settings.profile_window)
        self.aggregator = GroupStateAggregator(self.scorer, self.settings.group_window)
        self.tracker = ActivityTracker(self.tz)
        self.adaptation = AdaptationEngine()
        self.repetition = RepetitionDetector()
        self.situations = SituationClassifier(self._conversation)
        self.matcher = PatternMatcher(self._conversation, self.rng)

        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock_users: defaultdict[str, int] = defaultdict(int)
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, *, configure_logging: bool = False) -> None:
        """Create the tables; optionally install JSON logging at the configured level."""
        if configure_logging:
            setup_logging(self.settings.log_level)
        await self.db.init()

    async def start(self) -> None:
        """Launch the background maintenance tasks."""
        if self._tasks:
            return
        self._shutdown.clear()
        self._tasks = [
            asyncio.create_task(self._periodic("cache-sweep", CACHE_SWEEP_INTERVAL, self.sweep_caches)),
            asyncio.create_task(self._periodic("retention", RETENTION_INTERVAL, self.run_retention)),
            asyncio.create_task(self._periodic("activity", ACTIVITY_INTERVAL, self.refresh_activity)),
        ]
        logger.info("Background tasks started: %d", len(self._tasks))

    async def close(self) -> None:
        """Signal shutdown, wait for the background tasks and dispose the engine."""
        self._shutdown.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        await self.db.close()
        logger.info("ChatMemory closed")

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def _periodic(self, name: str, interval: float, job: Callable[[], Awaitable[object]]) -> None:
        # The job runs only between waits, so shutdown never interrupts a write.
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await job()
            except Exception:
                logger.exception("Background task %s failed", name)

    # ------------------------------------------------------------------
    # Maintenance jobs
    # ------------------------------------------------------------------

    async def sweep_caches(self) -> int:
        removed = self.caches.sweep()
        if removed:
            logger.debug("Cache sweep removed %d expired entries", removed)
        return removed

    async def run_retention(self, now: datetime | None = None) -> dict[str, int]:
        now = ensure_utc(now or self._clock())

        async def _sweep(session):
            result = await self._store(session).cleanup(now, self.settings.memory_days)
            result["events_archived"] = await EventService(session, self.caches).archive_old(
                now, self.settings.event_retention_days
            )
            return result

        return await self.db.write(_sweep, "retention sweep")

    async def refresh_activity(self, now: datetime | None = None) -> int:
        """Recompute the activity pattern of every chat seen so far."""
        now = ensure_utc(now or self._clock())
        chats = self.tracker.known_chats()

        async def _refresh(session):
            store = self._store(session)
            for chat_id in chats:
                await self.tracker.compute_pattern(store, chat_id, now)
            return len(chats)

        return await self.db.read(_refresh, "activity refresh")

    # ------------------------------------------------------------------
    # Per-message pipeline
    # ------------------------------------------------------------------

    async def handle_message(self, message: IncomingMessage) -> TurnOutcome:
        """Record, decide, generate and send for one incoming message.

        Never raises: any failure is logged and the turn ends in silence.
        """
        chat_token = chat_id_var.set(message.chat_id)
        trace_token = trace_id_var.set(generate_trace_id())
        started = time.perf_counter()
        outcome = TurnOutcome(reason="error")
        try:
            async with self._chat_lock(message.chat_id):
                outcome = await self._turn(message)
        except Exception:
            logger.exception("Turn failed for message %s", message.message_id)
        finally:
            logger.info(
                "Turn finished: %s",
                outcome.reason,
                extra={"action": outcome.reason, "duration_ms": round((time.perf_counter() - started) * 1000, 1)},
            )
            trace_id_var.reset(trace_token)
            chat_id_var.reset(chat_token)
        return outcome

    @asynccontextmanager
    async def _chat_lock(self, chat_id: str):
        """Serialize turns of one chat; the lock is dropped once no turn holds or awaits it."""
        self._lock_users[chat_id] += 1
        try:
            async with self._locks[chat_id]:
                yield
        finally:
            self._lock_users[chat_id] -= 1
            if not self._lock_users[chat_id]:
                del self._lock_users[chat_id]
                del self._locks[chat_id]

    async def _step(self, what: str, fn: Callable[[_Services], Awaitable[T]]) -> T | None:
        """Run one derived step in its own transaction; on failure log and return None."""
        try:
            async with self.db.session() as session:
                return await fn(self._services(session))
        except Exception:
            logger.warning("Turn step failed: %s", what, exc_info=True)
            return None

    async def _turn(self, message: IncomingMessage) -> TurnOutcome:
        chat_id, author, text = message.chat_id, message.author, message.text
        now = ensure_utc(message.timestamp)

        # The inbound message is committed before anything derived from it runs.
        annotation = self.annotator.annotate(text)
        async with self.db.session() as session:
            stored = await self._record_inbound(self._services(session), message, annotation, now)
        if stored is None:
            return TurnOutcome(reason="duplicate")

        event = None
        if not stored.from_agent:
            await self._update_derived(message, annotation, now)
            event = await self._step("event detection", lambda svc: self._detect_event(svc, stored))

        decision = await self._step(
            "decision", lambda svc: svc.engine.decide(chat_id, text, author, now, source_id=stored.source_id)
        )
        if decision is None:
            return TurnOutcome(event=event, reason="error")
        outcome = TurnOutcome(event=event, directive=decision.directive, reason=decision.reason)
        if not decision.respond:
            logger.debug("Suppressed (%s)", decision.reason)
            return outcome

        async def _prepare(svc: _Services):
            plan = await svc.engine.prepare(
                chat_id, text, author, now, directive=decision.directive, source_id=stored.source_id
            )
            return svc.engine, plan

        prepared = await self._step("prepare", _prepare)
        if prepared is None:
            outcome.reason = "error"
            return outcome
        engine, plan = prepared

        # Generation runs outside any session; produce never touches the store.
        reply, source = await engine.produce(plan)
        outcome.directive = plan.directive
        outcome.repetition = plan.repetition
        if reply is None:
            outcome.reason = "no_reply"
            return outcome

        sent_id = await self._send(chat_id, reply, message.message_id)
        outcome.responded = True
        outcome.text = reply
        outcome.source = source
        outcome.sent_message_id = sent_id
        logger.info("Replied via %s (%s)", source, decision.reason)

        reply_time = max(ensure_utc(self._clock()), now)
        await self._step("record reply", lambda svc: self._record_outbound(svc, chat_id, sent_id, reply, reply_time))
        for event_id in plan.event_ids:
            await self._step("mark event", lambda svc, event_id=event_id: svc.events.mark_mentioned(event_id, reply_time))
        self.caches.invalidate_chat(chat_id)
        return outcome

    async def _record_inbound(
        self, svc: _Services, message: IncomingMessage, annotation: Annotation, now: datetime
    ) -> StoredMessage | None:
        stored, created = await svc.store.add_message(
            message.chat_id,
            message.message_id,
            message.author,
            message.text,
            now,
            message_type=message.message_type,
            from_agent=svc.engine.is_self(message.author),
            importance=annotation.importance,
            emotion=annotation.emotion,
            topics=annotation.topics,
            mentions=annotation.mentions,
        )
        if not created or stored is None:
            logger.info("Duplicate message %s ignored", message.message_id)
            return None
        return stored

    async def _update_derived(self, message: IncomingMessage, annotation: Annotation, now: datetime) -> None:
        chat_id, author = message.chat_id, message.author
        await self._step(
            "relationship",
            lambda svc: svc.store.update_relationship(
                chat_id, author, now, mood=mood_from_tags([annotation.emotion]), topics=annotation.topics
            ),
        )
        for topic in annotation.topics:
            await self._step("topic", lambda svc, topic=topic: svc.store.upsert_topic(chat_id, topic, author, now))
        await self._step("profile", lambda svc: svc.profiles.rebuild(chat_id, author, now))
        self.tracker.note_activity(chat_id, now)

    async def _detect_event(self, svc: _Services, stored: StoredMessage):
        if stored.from_agent:
            return None
        window = await svc.store.recent_messages(stored.chat_id, EVENT_WINDOW + 1)
        preceding = [m for m in window if m.source_id != stored.source_id and not m.from_agent][-EVENT_WINDOW:]
        event = self.detector.detect(stored, preceding)
        if event is None:
            return None
        return await svc.events.record(event)

    async def _record_outbound(self, svc: _Services, chat_id: str, sent_id: str, text: str, when: datetime) -> None:
        annotation = self.annotator.annotate(text)
        await svc.store.add_message(
            chat_id,
            sent_id,
            self.settings.agent_name,
            text,
            when,
            from_agent=True,
            importance=annotation.importance,
            emotion=annotation.emotion,
            topics=annotation.topics,
            mentions=annotation.mentions,
        )
        for topic in annotation.topics:
            await svc.store.upsert_topic(chat_id, topic, self.settings.agent_name, when)

    async def _send(self, chat_id: str, text: str, reply_to: str) -> str:
        if self.transport is None:
            return f"{reply_to}:reply:{uuid.uuid4().hex[:8]}"
        return str(await self.transport.send(chat_id, text))

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    async def context(self, chat_id: str, text: str, author: str) -> MemoryContext:
        now = ensure_utc(self._clock())
        return await self.db.read(
            lambda s: self._store(s).build_context(
                chat_id, text, author, now=now, memory_days=self.settings.memory_days,
                min_relevance=self.settings.context_relevance_threshold,
            ),
            "build context",
        )

    async def profile(self, chat_id: str, user_name: str) -> EmotionalProfile | None:
        return await self.db.read(lambda s: self._services(s).profiles.get(chat_id, user_name), "get profile")

    async def group_state(self, chat_id: str) -> GroupEmotionalState | None:
        return await self.db.read(lambda s: self._services(s).group_states.latest(chat_id), "group state")

    async def stats(self, chat_id: str) -> dict:
        async def _stats(session):
            svc = self._services(session)
            return {
                "memory": await svc.store.stats(chat_id),
                "events": await svc.events.stats(chat_id),
                "activity": self.tracker.describe(chat_id),
                "caches": self.caches.stats(),
            }

        return await self.db.read(_stats, "stats")

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _store(self, session) -> MemoryStore:
        return MemoryStore(session, self.caches, self.tz, self._conversation)

    def _services(self, session) -> _Services:
        store = self._store(session)
        profiles = ProfileService(session, self.profile_builder, store, self.caches)
        group_states = GroupStateService(session, self.aggregator, store)
        events = EventService(session, self.caches)
        engine = ResponseEngine(
            self.settings,
            store,
            profiles,
            group_states,
            events,
            self.tracker,
            self.caches,
            generator=self.generator,
            matcher=self.matcher,
            adaptation=self.adaptation,
            repetition=self.repetition,
            situations=self.situations,
            lexicon=self._conversation,
            rng=self.rng,
            tz=self.tz,
        )
        return _Services(store, profiles, group_states, events, engine)
