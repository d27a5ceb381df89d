"""Tests for emotional profiles and group emotional state."""

from datetime import timedelta

import pytest

from chatmem.core.errors import DataIntegrityWarning
from chatmem.models.emotional_state import EmotionalProfileRecord, GroupStateSnapshot
from chatmem.services.emotion import EmotionScorer
from chatmem.services.group_state import GroupStateAggregator, GroupStateService
from chatmem.services.profile import ProfileBuilder, ProfileService
from conftest import FROZEN_NOW, make_message

CHEERFUL = ["Ахаха круто, супер!!!", "Ахаха, супер круто!!!", "Круто! Ахаха супер!!", "Супер, ахаха, круто!!!", "Ахаха круто супер!!!"]
GLOOMY = ["мне грустно и печально"] * 6
HOSTILE = ["это бред и чушь"] * 5


@pytest.fixture
def scorer() -> EmotionScorer:
    return EmotionScorer()


def _history(texts, author="Alex", start=FROZEN_NOW - timedelta(hours=1)):
    return [
        make_message(t, author, source_id=f"{author}-{i}", timestamp=start + timedelta(minutes=i))
        for i, t in enumerate(texts)
    ]


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class TestProfileBuilder:
    def test_too_few_messages(self, scorer):
        assert ProfileBuilder(scorer).build("Alex", _history(CHEERFUL[:4])) is None

    def test_sanguine(self, scorer):
        profile = ProfileBuilder(scorer).build("Alex", _history(CHEERFUL))
        assert profile.temperament == "sanguine"
        assert profile.typical_emotions == ["joy"]
        assert profile.social_role == "observer"
        assert profile.message_count == 5
        assert len(profile.recent_moods) == 5

    def test_melancholic(self, scorer):
        profile = ProfileBuilder(scorer).build("Alex", _history(GLOOMY))
        assert profile.temperament == "melancholic"
        assert profile.avg_valence < -0.2

    def test_challenger(self, scorer):
        assert ProfileBuilder(scorer).build("Alex", _history(HOSTILE)).social_role == "challenger"

    def test_bounds_and_limits(self, scorer):
        texts = (CHEERFUL + GLOOMY + HOSTILE) * 10
        profile = ProfileBuilder(scorer, max_messages=100).build("Alex", _history(texts))
        assert profile.message_count == 100
        assert 0.0 <= profile.expressiveness <= 1.0
        assert 0.0 <= profile.stability <= 1.0
        assert len(profile.typical_emotions) <= 3
        assert len(profile.recent_moods) == 10

    def test_rebuild_is_deterministic(self, scorer):
        history = _history(CHEERFUL + GLOOMY)
        builder = ProfileBuilder(scorer)
        assert builder.build("Alex", history) == builder.build("Alex", history)


class TestProfileService:
    @pytest.fixture
    def profiles(self, db_session, store, caches, scorer) -> ProfileService:
        return ProfileService(db_session, ProfileBuilder(scorer), store, caches)

    async def test_rebuild_and_get(self, profiles, store):
        for msg in _history(CHEERFUL):
            await store.add_message(msg.chat_id, msg.source_id, msg.author, msg.content, msg.timestamp)
        built = await profiles.rebuild("chat-1", "Alex", FROZEN_NOW)
        assert built is not None
        assert await profiles.get("chat-1", "Alex") == built

    async def test_rebuild_below_minimum(self, profiles, store):
        await store.add_message("chat-1", "m1", "Alex", "Привет", FROZEN_NOW)
        assert await profiles.rebuild("chat-1", "Alex", FROZEN_NOW) is None
        assert await profiles.get("chat-1", "Alex") is None

    async def test_rebuild_replaces_stored_profile(self, profiles, store, caches):
        for msg in _history(CHEERFUL):
            await store.add_message(msg.chat_id, msg.source_id, msg.author, msg.content, msg.timestamp)
        await profiles.rebuild("chat-1", "Alex", FROZEN_NOW)
        assert (await profiles.get("chat-1", "Alex")).temperament == "sanguine"

        for msg in _history(GLOOMY * 3, start=FROZEN_NOW):
            await store.add_message(msg.chat_id, f"g-{msg.source_id}", msg.author, msg.content, msg.timestamp)
        await profiles.rebuild("chat-1", "Alex", FROZEN_NOW + timedelta(hours=1))
        assert (await profiles.get("chat-1", "Alex")).temperament == "melancholic"

    async def test_agent_messages_ignored(self, profiles, store):
        for msg in _history(CHEERFUL[:4]):
            await store.add_message(msg.chat_id, msg.source_id, msg.author, msg.content, msg.timestamp)
        await store.add_message("chat-1", "own", "Alex", "Ахаха", FROZEN_NOW, from_agent=True)
        assert await profiles.rebuild("chat-1", "Alex", FROZEN_NOW) is None

    async def test_malformed_payload_is_absent(self, profiles, db_session):
        db_session.add(EmotionalProfileRecord(
            chat_id="chat-1", user_name="Alex", payload={"user_name": "Alex"}, source_count=5, built_at=FROZEN_NOW
        ))
        await db_session.flush()
        with pytest.warns(DataIntegrityWarning):
            assert await profiles.get("chat-1", "Alex") is None

    async def test_get_many_skips_missing(self, profiles, store):
        for msg in _history(CHEERFUL):
            await store.add_message(msg.chat_id, msg.source_id, msg.author, msg.content, msg.timestamp)
        await profiles.rebuild("chat-1", "Alex", FROZEN_NOW)
        found = await profiles.get_many("chat-1", ["Alex", "Bob", "Alex"])
        assert list(found) == ["Alex"]


# ---------------------------------------------------------------------------
# Group state
# ---------------------------------------------------------------------------


def _dispute(start=FROZEN_NOW - timedelta(minutes=30)):
    return [
        make_message("это бред", "Alex", source_id="d1", timestamp=start),
        make_message("сам ты чушь несешь", "Bob", source_id="d2", timestamp=start + timedelta(minutes=1)),
        make_message("ерунда полная", "Alex", source_id="d3", timestamp=start + timedelta(minutes=2)),
    ]


def _calm(n=5, start=FROZEN_NOW):
    return [
        make_message(f"пойдем гулять {i}", "Carol", source_id=f"c{i}", timestamp=start + timedelta(minutes=i))
        for i in range(n)
    ]


class TestGroupStateAggregator:
    def test_empty_window(self, scorer):
        state = GroupStateAggregator(scorer).aggregate([], now=FROZEN_NOW)
        assert state.message_count == 0
        assert state.conflicts == []

    def test_bounded_dimensions(self, scorer):
        messages = _history(CHEERFUL + GLOOMY + HOSTILE, author="Alex") + _calm()
        state = GroupStateAggregator(scorer).aggregate(messages, now=FROZEN_NOW)
        for value in (state.harmony, state.tension, state.energy, state.engagement):
            assert 0.0 <= value <= 1.0

    def test_detects_conflict_between_two_authors(self, scorer):
        state = GroupStateAggregator(scorer).aggregate(_dispute(), now=FROZEN_NOW)
        assert len(state.active_conflicts) == 1
        conflict = state.active_conflicts[0]
        assert set(conflict.participants) == {"Alex", "Bob"}
        assert conflict.intensity > 0.3
        assert state.tension > 0.3

    def test_same_author_is_not_a_conflict(self, scorer):
        state = GroupStateAggregator(scorer).aggregate(_history(HOSTILE), now=FROZEN_NOW)
        assert state.conflicts == []

    def test_conflict_decays_then_resolves(self, scorer):
        aggregator = GroupStateAggregator(scorer)
        first = aggregator.aggregate(_dispute(), now=FROZEN_NOW)
        cooling = aggregator.aggregate(_calm(), previous=first, now=FROZEN_NOW + timedelta(minutes=15))
        assert [c.status for c in cooling.conflicts] == ["cooling"]
        resolved = aggregator.aggregate(_calm(), previous=cooling, now=FROZEN_NOW + timedelta(minutes=30))
        assert resolved.conflicts == []

    def test_cooling_conflict_reactivates(self, scorer):
        aggregator = GroupStateAggregator(scorer)
        first = aggregator.aggregate(_dispute(), now=FROZEN_NOW)
        cooling = aggregator.aggregate(_calm(), previous=first, now=FROZEN_NOW)
        again = aggregator.aggregate(_dispute(FROZEN_NOW), previous=cooling, now=FROZEN_NOW + timedelta(hours=1))
        assert [c.status for c in again.conflicts] == ["active"]

    def test_emotional_topics(self, scorer):
        messages = [
            make_message("футбол это супер круто", "Alex", source_id="t1", topics=["футбол"]),
            make_message("футбол супер", "Bob", source_id="t2", topics=["футбол"]),
        ]
        state = GroupStateAggregator(scorer).aggregate(messages, now=FROZEN_NOW)
        assert [t.topic for t in state.emotional_topics] == ["футбол"]
        assert state.emotional_topics[0].participants == ["Alex", "Bob"]


class TestGroupStateService:
    @pytest.fixture
    def group_states(self, db_session, store, scorer) -> GroupStateService:
        return GroupStateService(db_session, GroupStateAggregator(scorer), store)

    async def _seed(self, store, messages):
        for msg in messages:
            await store.add_message(msg.chat_id, msg.source_id, msg.author, msg.content, msg.timestamp)

    async def test_needs_five_messages(self, group_states, store):
        await self._seed(store, _calm(4, start=FROZEN_NOW - timedelta(minutes=10)))
        assert await group_states.refresh("chat-1", FROZEN_NOW) is None

    async def test_refresh_is_rate_limited(self, group_states, store, db_session):
        await self._seed(store, _calm(5, start=FROZEN_NOW - timedelta(minutes=10)))
        first = await group_states.refresh("chat-1", FROZEN_NOW)
        second = await group_states.refresh("chat-1", FROZEN_NOW + timedelta(minutes=5))
        assert first is not None
        assert second.computed_at == first.computed_at
        assert len(await group_states.history("chat-1")) == 1

    async def test_snapshots_are_appended(self, group_states, store):
        await self._seed(store, _calm(5, start=FROZEN_NOW - timedelta(minutes=10)))
        await group_states.refresh("chat-1", FROZEN_NOW)
        await group_states.refresh("chat-1", FROZEN_NOW + timedelta(minutes=11))
        history = await group_states.history("chat-1")
        assert [s.computed_at for s in history] == [FROZEN_NOW + timedelta(minutes=11), FROZEN_NOW]

    async def test_malformed_snapshot_skipped(self, group_states, db_session):
        db_session.add(GroupStateSnapshot(
            chat_id="chat-1", computed_at=FROZEN_NOW, message_count=5, payload={"harmony": 7}
        ))
        await db_session.flush()
        with pytest.warns(DataIntegrityWarning):
            assert await group_states.latest("chat-1") is None
