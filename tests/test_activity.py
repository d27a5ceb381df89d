"""Tests for activity patterns and response modifiers."""

from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest

from chatmem.schemas import ActivityPattern
from chatmem.services.activity import ActivityTracker, activity_trend
from conftest import FROZEN_NOW


def _hours_ago(*hours):
    return [FROZEN_NOW - timedelta(hours=h) for h in hours]


@pytest.fixture
def tracker() -> ActivityTracker:
    return ActivityTracker()


class TestTrend:
    @pytest.mark.parametrize(
        "recent,previous,expected",
        [
            (10, 4, "increasing"),
            (3, 4, "stable"),
            (1, 8, "decreasing"),
            (5, 0, "stable"),
            (0, 0, "stable"),
        ],
    )
    def test_activity_trend(self, recent, previous, expected):
        assert activity_trend(recent, previous) == expected

    def test_pattern_trend_from_timestamps(self, tracker):
        recent = [FROZEN_NOW - timedelta(days=1, minutes=i) for i in range(10)]
        previous = [FROZEN_NOW - timedelta(days=5, minutes=i) for i in range(4)]
        assert tracker.build_pattern(recent + previous, FROZEN_NOW).trend == "increasing"


class TestBuildPattern:
    def test_histograms(self, tracker):
        timestamps = _hours_ago(0, 24, 48) + [FROZEN_NOW - timedelta(days=10)]
        pattern = tracker.build_pattern(timestamps, FROZEN_NOW)
        assert pattern.hourly[15] == 3
        assert sum(pattern.hourly) == 3
        assert sum(pattern.weekly) == 4
        # Wednesday with Sunday = 0
        assert pattern.weekly[3] == 1
        assert pattern.last_activity == FROZEN_NOW

    def test_local_time_zone(self):
        tracker = ActivityTracker(tz=ZoneInfo("Europe/Moscow"))
        pattern = tracker.build_pattern([FROZEN_NOW.replace(hour=12)], FROZEN_NOW)
        assert pattern.hourly[15] == 1

    def test_empty(self, tracker):
        pattern = tracker.build_pattern([], FROZEN_NOW)
        assert pattern.hourly == [0] * 24
        assert pattern.last_activity is None


class TestModifiers:
    def test_no_history_is_neutral(self, tracker):
        mods = tracker.modifiers(ActivityPattern(), FROZEN_NOW)
        assert mods.response_multiplier == pytest.approx(1.25)
        assert mods.delay_multiplier == pytest.approx(1.5)
        assert mods.is_active_time is True
        assert mods.inactivity_minutes == 0.0

    def test_peak_time_with_rising_activity(self, tracker):
        hourly = [0] * 24
        hourly[15] = 10
        weekly = [0] * 7
        weekly[3] = 10
        pattern = ActivityPattern(hourly=hourly, weekly=weekly, trend="increasing")
        mods = tracker.modifiers(pattern, FROZEN_NOW)
        assert mods.response_multiplier == pytest.approx(2.4)
        assert mods.delay_multiplier == pytest.approx(0.8)
        assert mods.is_active_time is True

    def test_dead_hour_with_falling_activity(self, tracker):
        hourly = [0] * 24
        hourly[3] = 10
        weekly = [0] * 7
        weekly[0] = 10
        pattern = ActivityPattern(hourly=hourly, weekly=weekly, trend="decreasing")
        mods = tracker.modifiers(pattern, FROZEN_NOW)
        assert mods.response_multiplier == pytest.approx(0.4)
        assert mods.delay_multiplier == 2.0
        assert mods.is_active_time is False

    def test_inactivity(self, tracker):
        pattern = ActivityPattern(last_activity=FROZEN_NOW - timedelta(minutes=90))
        assert tracker.modifiers(pattern, FROZEN_NOW).inactivity_minutes == pytest.approx(90)
        override = FROZEN_NOW - timedelta(minutes=3)
        assert tracker.modifiers(pattern, FROZEN_NOW, override).inactivity_minutes == pytest.approx(3)


class TestTrackerWithStore:
    async def _seed(self, store, timestamps):
        for i, ts in enumerate(timestamps):
            await store.add_message("chat-1", f"m{i}", "Alex", "текст", ts)

    async def test_pattern_is_cached_until_stale(self, tracker, store):
        await self._seed(store, _hours_ago(1, 2))
        first = await tracker.get_pattern(store, "chat-1", FROZEN_NOW)
        assert sum(first.hourly) == 2

        await store.add_message("chat-1", "late", "Bob", "ещё", FROZEN_NOW)
        same = await tracker.get_pattern(store, "chat-1", FROZEN_NOW + timedelta(minutes=5))
        assert same is first
        fresh = await tracker.get_pattern(store, "chat-1", FROZEN_NOW + timedelta(minutes=20))
        assert sum(fresh.hourly) == 3

    async def test_agent_messages_do_not_count(self, tracker, store):
        await store.add_message("chat-1", "own", "Саня", "ответ", FROZEN_NOW, from_agent=True)
        pattern = await tracker.compute_pattern(store, "chat-1", FROZEN_NOW)
        assert sum(pattern.hourly) == 0

    async def test_modifiers_measure_gap_before_now(self, tracker, store):
        await self._seed(store, [FROZEN_NOW - timedelta(hours=2), FROZEN_NOW])
        mods = await tracker.get_modifiers(store, "chat-1", FROZEN_NOW)
        assert mods.inactivity_minutes == pytest.approx(120)

    async def test_describe_and_note_activity(self, tracker, store):
        assert tracker.describe("chat-1") is None
        await self._seed(store, _hours_ago(0, 1, 24))
        await tracker.compute_pattern(store, "chat-1", FROZEN_NOW)

        info = tracker.describe("chat-1")
        assert info["peak_hours"][0] == 15
        assert info["peak_days"][0] == "Среда"
        assert tracker.known_chats() == ["chat-1"]

        later = FROZEN_NOW + timedelta(minutes=1)
        tracker.note_activity("chat-1", later)
        assert tracker.describe("chat-1")["last_activity"] == later
        tracker.forget("chat-1")
        assert tracker.known_chats() == []
