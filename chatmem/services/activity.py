"""Chat rhythm: hourly and weekly histograms, short-term trend, response modifiers."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone, tzinfo

from chatmem.core.clock import ensure_utc, sunday_weekday
from chatmem.schemas import ActivityModifiers, ActivityPattern
from chatmem.services.memory import MemoryStore

logger = logging.getLogger(__name__)

HOURLY_DAYS = 7
WEEKLY_DAYS = 28
RECENT_DAYS = 3
PREVIOUS_DAYS = 4
RECOMPUTE_INTERVAL = timedelta(minutes=15)

_WEEKDAY_NAMES = ("Воскресенье", "Понедельник", "Вторник", "Среда", "Четверг", "Пятница", "Суббота")


def activity_trend(recent: int, previous: int) -> str:
    """Compare per-day rates of the last 3 days and the 4 days before."""
    if previous == 0:
        return "stable"
    recent_rate = recent / RECENT_DAYS
    previous_rate = previous / PREVIOUS_DAYS
    if recent_rate > previous_rate * 1.2:
        return "increasing"
    if recent_rate < previous_rate * 0.8:
        return "decreasing"
    return "stable"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _normalized(histogram: Sequence[int], index: int) -> float:
    peak = max(histogram)
    return histogram[index] / peak if peak else 0.5


class ActivityTracker:
    """Holds one derived ``ActivityPattern`` per chat.

    Patterns are not persisted. They are recomputed from the message log when
    older than the recompute interval, or in bulk by the background refresher.
    """

    def __init__(self, tz: tzinfo = timezone.utc, recompute_interval: timedelta = RECOMPUTE_INTERVAL):
        self.tz = tz
        self.recompute_interval = recompute_interval
        self._patterns: dict[str, ActivityPattern] = {}

    def build_pattern(
        self,
        timestamps: Sequence[datetime],
        now: datetime,
        last_activity: datetime | None = None,
    ) -> ActivityPattern:
        now = ensure_utc(now)
        hourly = [0] * 24
        weekly = [0] * 7
        recent = previous = 0
        hourly_from = now - timedelta(days=HOURLY_DAYS)
        weekly_from = now - timedelta(days=WEEKLY_DAYS)
        recent_from = now - timedelta(days=RECENT_DAYS)
        previous_from = recent_from - timedelta(days=PREVIOUS_DAYS)

        for ts in timestamps:
            ts = ensure_utc(ts)
            local = ts.astimezone(self.tz)
            if ts >= hourly_from:
                hourly[local.hour] += 1
            if ts >= weekly_from:
                weekly[sunday_weekday(local)] += 1
            if ts >= recent_from:
                recent += 1
            elif ts >= previous_from:
                previous += 1

        if last_activity is None and timestamps:
            last_activity = max(ensure_utc(t) for t in timestamps)
        return ActivityPattern(
            hourly=hourly,
            weekly=weekly,
            trend=activity_trend(recent, previous),
            last_activity=last_activity,
            computed_at=now,
        )

    async def compute_pattern(self, store: MemoryStore, chat_id: str, now: datetime) -> ActivityPattern:
        now = ensure_utc(now)
        timestamps = await store.activity_timestamps(chat_id, now - timedelta(days=WEEKLY_DAYS))
        pattern = self.build_pattern(timestamps, now, await store.last_activity(chat_id))
        self._patterns[chat_id] = pattern
        logger.debug("Activity pattern for %s: trend=%s, %d msgs", chat_id, pattern.trend, len(timestamps))
        return pattern

    async def get_pattern(self, store: MemoryStore, chat_id: str, now: datetime) -> ActivityPattern:
        pattern = self._patterns.get(chat_id)
        if pattern is None or pattern.computed_at is None or ensure_utc(now) - pattern.computed_at >= self.recompute_interval:
            pattern = await self.compute_pattern(store, chat_id, now)
        return pattern

    async def get_modifiers(self, store: MemoryStore, chat_id: str, now: datetime) -> ActivityModifiers:
        """Modifiers with inactivity measured up to the last message before ``now``."""
        pattern = await self.get_pattern(store, chat_id, now)
        return self.modifiers(pattern, now, await store.last_activity(chat_id, before=now))

    def modifiers(
        self,
        pattern: ActivityPattern,
        now: datetime,
        last_activity: datetime | None = None,
    ) -> ActivityModifiers:
        """Modifiers for ``now``; ``last_activity`` overrides the pattern's mark."""
        now = ensure_utc(now)
        last_activity = last_activity or pattern.last_activity
        local = now.astimezone(self.tz)
        combined = 0.7 * _normalized(pattern.hourly, local.hour) + 0.3 * _normalized(
            pattern.weekly, sunday_weekday(local)
        )

        response = 0.5 + 1.5 * combined
        delay = 2.0 - combined
        if pattern.trend == "increasing":
            response *= 1.2
            delay *= 0.8
        elif pattern.trend == "decreasing":
            response *= 0.8
            delay *= 1.2

        inactivity = 0.0
        if last_activity is not None:
            inactivity = max(0.0, (now - ensure_utc(last_activity)).total_seconds() / 60)

        return ActivityModifiers(
            response_multiplier=_clamp(response, 0.1, 3.0),
            delay_multiplier=_clamp(delay, 0.5, 2.0),
            is_active_time=combined > 0.3,
            inactivity_minutes=inactivity,
        )

    def note_activity(self, chat_id: str, timestamp: datetime) -> None:
        """Advance the cached last-activity mark without a full recompute."""
        pattern = self._patterns.get(chat_id)
        if pattern is None:
            return
        timestamp = ensure_utc(timestamp)
        if pattern.last_activity is None or timestamp > pattern.last_activity:
            pattern.last_activity = timestamp

    def describe(self, chat_id: str, top: int = 3) -> dict | None:
        """Peak hours and days of the cached pattern, None when not computed yet."""
        pattern = self._patterns.get(chat_id)
        if pattern is None:
            return None
        hours = sorted(range(24), key=lambda h: (-pattern.hourly[h], h))[:top]
        days = sorted(range(7), key=lambda d: (-pattern.weekly[d], d))[:top]
        return {
            "peak_hours": [h for h in hours if pattern.hourly[h]],
            "peak_days": [_WEEKDAY_NAMES[d] for d in days if pattern.weekly[d]],
            "trend": pattern.trend,
            "last_activity": pattern.last_activity,
        }

    def known_chats(self) -> list[str]:
        return list(self._patterns)

    def forget(self, chat_id: str) -> None:
        self._patterns.pop(chat_id, None)
