"""End-to-end tests for the ChatMemory orchestration root."""

import asyncio
import logging
import random
from datetime import timedelta

import pytest
import pytest_asyncio

from chatmem import ChatMemory
from chatmem.core.config import load_settings
from chatmem.core.logging import JSONFormatter
from chatmem.providers.transport import Transport
from chatmem.services.events import EventService
from chatmem.services.profile import ProfileService
from chatmem.services.response import ResponseEngine
from conftest import FROZEN_NOW, TEST_SEED, MockGenerationProvider, incoming

HOW_ARE_YOU = {"Да нормально всё, работаю потихоньку", "Живу, не жалуюсь. Сам как?"}


class BrokenTransport(Transport):
    async def send(self, chat_id: str, text: str) -> str:
        raise ConnectionError("transport down")


@pytest_asyncio.fixture
async def make_memory(tmp_path, clock, transport):
    """Factory for ChatMemory instances with custom settings."""
    created: list[ChatMemory] = []

    async def _make(generator=None, transport_override=None, **overrides) -> ChatMemory:
        settings = load_settings(
            _env_file=None,
            database_url=f"sqlite+aiosqlite:///{tmp_path / f'custom-{len(created)}.db'}",
            random_seed=TEST_SEED,
            timezone="UTC",
            **overrides,
        )
        instance = ChatMemory(
            settings,
            generator=generator,
            transport=transport_override or transport,
            clock=clock,
            rng=random.Random(TEST_SEED),
        )
        await instance.init()
        created.append(instance)
        return instance

    yield _make
    for instance in created:
        await instance.close()


# ---------------------------------------------------------------------------
# Turn pipeline
# ---------------------------------------------------------------------------


class TestTurn:
    async def test_first_greeting_with_default_activity(self, memory, transport):
        outcome = await memory.handle_message(incoming("Привет, как дела?", message_id="m1"))

        # cold chat: probability is the bare activity level and the seeded draw misses it
        assert outcome.responded is False
        assert outcome.reason == "probability_miss"
        assert transport.sent == []
        assert await memory.profile("chat-1", "Alex") is None
        assert await memory.group_state("chat-1") is None

    async def test_first_greeting_with_full_activity(self, make_memory, transport):
        memory = await make_memory(activity_level=1.0)
        outcome = await memory.handle_message(incoming("Привет, как дела?", message_id="m1"))

        assert outcome.responded is True
        assert outcome.source == "pattern"
        assert outcome.text in HOW_ARE_YOU
        assert outcome.sent_message_id == "out-1"
        assert transport.sent == [("chat-1", outcome.text)]

        stats = await memory.stats("chat-1")
        assert stats["memory"]["total_messages"] == 2
        assert stats["memory"]["total_users"] == 1

    async def test_generated_reply(self, make_memory):
        generator = MockGenerationProvider(reply="Релиз в пятницу")
        memory = await make_memory(generator, activity_level=1.0)
        outcome = await memory.handle_message(incoming("Как там релиз?", message_id="m1"))
        assert (outcome.text, outcome.source) == ("Релиз в пятницу", "generation")
        assert outcome.directive is not None
        assert outcome.repetition.count == 1

    async def test_generation_failure_falls_back(self, make_memory):
        memory = await make_memory(MockGenerationProvider(fail=True), activity_level=1.0)
        outcome = await memory.handle_message(incoming("Привет, как дела?", message_id="m1"))
        assert outcome.source == "pattern"
        assert outcome.text in HOW_ARE_YOU

    async def test_duplicate_message(self, memory):
        await memory.handle_message(incoming("Привет", message_id="m1"))
        outcome = await memory.handle_message(incoming("Привет", message_id="m1"))
        assert outcome.reason == "duplicate"
        assert (await memory.stats("chat-1"))["memory"]["total_messages"] == 1

    async def test_own_message_is_recorded_but_ignored(self, memory):
        outcome = await memory.handle_message(incoming("Саня тут", "Саня", message_id="own"))
        assert outcome.reason == "self"
        stats = await memory.stats("chat-1")
        assert stats["memory"]["total_messages"] == 1
        assert stats["memory"]["total_users"] == 0

    async def test_mention_always_answered(self, make_memory):
        memory = await make_memory(activity_level=0.0)
        outcome = await memory.handle_message(incoming("Саня, спасибо!", message_id="m1"))
        assert outcome.reason == "mention"
        assert outcome.responded is True

    async def test_no_reply_available(self, make_memory, transport):
        memory = await make_memory(activity_level=1.0)
        outcome = await memory.handle_message(incoming("квантовая хромодинамика", message_id="m1"))
        assert outcome.responded is False
        assert outcome.reason == "no_reply"
        assert transport.sent == []

    async def test_failure_ends_turn_in_silence(self, make_memory):
        memory = await make_memory(activity_level=1.0, transport_override=BrokenTransport())
        outcome = await memory.handle_message(incoming("Привет, как дела?", message_id="m1"))
        assert outcome.responded is False
        assert outcome.reason == "error"

    async def test_without_transport_reply_id_is_derived(self, tmp_path, clock):
        settings = load_settings(
            _env_file=None, database_url=f"sqlite+aiosqlite:///{tmp_path / 'bare.db'}", activity_level=1.0
        )
        memory = ChatMemory(settings, clock=clock, rng=random.Random(TEST_SEED))
        await memory.init()
        try:
            outcome = await memory.handle_message(incoming("Привет, как дела?", message_id="m1"))
        finally:
            await memory.close()
        assert outcome.sent_message_id.startswith("m1:reply:")

    async def test_chats_are_independent(self, make_memory):
        memory = await make_memory(activity_level=1.0)
        first, second = await asyncio.gather(
            memory.handle_message(incoming("Привет, как дела?", chat_id="a", message_id="m1")),
            memory.handle_message(incoming("Привет, как дела?", chat_id="b", message_id="m1")),
        )
        assert first.responded and second.responded
        assert (await memory.stats("a"))["memory"]["total_messages"] == 2
        assert (await memory.stats("b"))["memory"]["total_messages"] == 2


class TestEvents:
    async def test_celebration_detected(self, memory):
        outcome = await memory.handle_message(incoming("Поздравляю с днем рождения! 🎂🎉", message_id="m1"))
        assert outcome.event is not None
        assert outcome.event.event_type == "celebration"
        assert outcome.event.title == "День рождения в чате"
        assert (await memory.stats("chat-1"))["events"]["total"] == 1

    async def test_event_used_in_reply_is_marked(self, make_memory):
        memory = await make_memory(activity_level=1.0)
        outcome = await memory.handle_message(incoming("Поздравляю с днем рождения! 🎂🎉", message_id="m1"))
        assert outcome.responded is True
        events = await memory.db.read(lambda s: EventService(s).by_type("chat-1", "celebration"))
        assert events[0].mention_count == 1


class TestWarmChat:
    async def test_profile_and_group_state_after_history(self, make_memory, clock):
        memory = await make_memory(activity_level=0.0)
        texts = ["Ахаха круто, супер!!!", "Ахаха, супер круто!!!", "Круто! Ахаха супер!!",
                 "Супер, ахаха, круто!!!", "Ахаха круто супер!!!", "Ну что, гуляем?"]
        for i, text in enumerate(texts):
            author = "Alex" if i < 5 else "Bob"
            await memory.handle_message(incoming(text, author, message_id=f"m{i}", timestamp=clock()))
            clock.advance(minutes=1)

        profile = await memory.profile("chat-1", "Alex")
        assert profile is not None
        assert profile.temperament == "sanguine"
        assert await memory.group_state("chat-1") is not None
        assert await memory.refresh_activity() == 1
        assert (await memory.stats("chat-1"))["activity"]["peak_hours"] == [15]

    async def test_context(self, memory, clock):
        await memory.handle_message(incoming("Кто идет на футбол в субботу?", message_id="m1"))
        clock.advance(minutes=1)
        ctx = await memory.context("chat-1", "Что там с футболом?", "Bob")
        assert [m.source_id for m in ctx.recent_messages] == ["m1"]
        assert ctx.relationship is None


# ---------------------------------------------------------------------------
# Lifecycle and maintenance
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_and_close(self, memory):
        await memory.start()
        assert memory.running is True
        await memory.close()
        assert memory.running is False

    async def test_start_is_idempotent(self, memory):
        await memory.start()
        tasks = list(memory._tasks)
        await memory.start()
        assert memory._tasks == tasks

    async def test_retention(self, memory):
        old = FROZEN_NOW - timedelta(days=40)
        await memory.handle_message(incoming("старое сообщение", message_id="old", timestamp=old))
        await memory.handle_message(incoming("свежее сообщение", message_id="new"))
        result = await memory.run_retention(FROZEN_NOW)
        assert result["messages_deleted"] == 1
        assert result["events_archived"] == 0
        assert (await memory.stats("chat-1"))["memory"]["total_messages"] == 1

    async def test_sweep_caches(self, memory):
        memory.caches.ai.set("chat-1:x", "y", ttl=-1)
        assert await memory.sweep_caches() == 1

    async def test_stats_shape(self, memory):
        stats = await memory.stats("chat-1")
        assert set(stats) == {"memory", "events", "activity", "caches"}
        assert stats["activity"] is None
        assert "ai" in stats["caches"]


# ---------------------------------------------------------------------------
# Partial failures inside a turn
# ---------------------------------------------------------------------------


class TestPartialFailures:
    async def test_event_detection_failure_keeps_message_and_reply(self, make_memory):
        memory = await make_memory(activity_level=1.0)

        def _broken(*args, **kwargs):
            raise RuntimeError("detector exploded")

        memory.detector.detect = _broken
        outcome = await memory.handle_message(incoming("Привет, как дела?", message_id="m1"))

        assert outcome.responded is True
        assert outcome.event is None
        assert (await memory.stats("chat-1"))["memory"]["total_messages"] == 2

    async def test_profile_rebuild_failure_keeps_relationship(self, make_memory, monkeypatch):
        memory = await make_memory(activity_level=1.0)

        async def _broken(self, *args, **kwargs):
            raise RuntimeError("profile store down")

        monkeypatch.setattr(ProfileService, "rebuild", _broken)
        outcome = await memory.handle_message(incoming("Привет, как дела?", message_id="m1"))

        assert outcome.responded is True
        stats = await memory.stats("chat-1")
        assert stats["memory"]["total_messages"] == 2
        assert stats["memory"]["total_users"] == 1

    async def test_failed_decision_still_records_message(self, memory, monkeypatch):
        async def _broken(self, *args, **kwargs):
            raise RuntimeError("decision failed")

        monkeypatch.setattr(ResponseEngine, "decide", _broken)
        outcome = await memory.handle_message(incoming("Привет", message_id="m1"))

        assert outcome.reason == "error"
        assert outcome.responded is False
        assert (await memory.stats("chat-1"))["memory"]["total_messages"] == 1


class TestTurnBookkeeping:
    async def test_chat_locks_released_after_turn(self, memory):
        await memory.handle_message(incoming("Привет", message_id="m1"))
        await memory.handle_message(incoming("Привет", chat_id="other", message_id="m1"))
        assert dict(memory._locks) == {}

    async def test_turn_log_carries_action_and_duration(self, memory, caplog):
        with caplog.at_level(logging.INFO, logger="chatmem._core"):
            await memory.handle_message(incoming("Привет", message_id="m1"))
        finished = [r for r in caplog.records if r.getMessage().startswith("Turn finished")]
        assert len(finished) == 1
        assert finished[0].action == "probability_miss"
        assert finished[0].duration_ms >= 0

    async def test_init_configures_logging(self, make_memory):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            memory = await make_memory(log_level="DEBUG")
            await memory.init(configure_logging=True)
            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    async def test_context_applies_relevance_threshold(self, make_memory, clock):
        memory = await make_memory(activity_level=0.0)
        await memory.handle_message(incoming("Вкусные пироги у мамы", message_id="m1"))
        await memory.handle_message(incoming("Суши или пицца", "Bob", message_id="m2"))
        for i in range(5):
            clock.advance(minutes=1)
            await memory.handle_message(incoming(f"болтовня {i}", "Carl", message_id=f"c{i}", timestamp=clock()))

        ctx = await memory.context("chat-1", "Суши вкусные", "Alex")
        assert [m.source_id for m in ctx.relevant_messages] == ["m2"]
