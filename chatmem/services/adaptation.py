"""Behavioral adaptation: turn profile, group state and recent trend into a directive.

The three layers are applied in a fixed order: the author's profile first,
then the group state, then the recent emotion trend. Later layers may
override the tone chosen by earlier ones.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence

from chatmem.schemas import AdaptationDirective, EmotionalProfile, EmotionTrend, GroupEmotionalState, PromptHints

logger = logging.getLogger(__name__)

POSITIVE_TAGS = frozenset({"positive", "joy", "excited", "funny"})

_TEMPERAMENT_TEXT = {
    "sanguine": "cheerful and sociable",
    "choleric": "energetic and quick-tempered",
    "melancholic": "thoughtful and sensitive",
    "phlegmatic": "calm and even-tempered",
}

_ROLE_TEXT = {
    "entertainer": "entertains the group",
    "supporter": "supports others",
    "challenger": "likes to argue",
    "leader": "leads discussions",
    "mediator": "keeps the peace",
    "observer": "mostly watches",
}

_TONE_TEXT = {
    "supportive": "Be supportive and understanding.",
    "playful": "Use a playful, cheerful tone.",
    "serious": "Answer seriously and thoughtfully.",
    "calming": "Use a calm, peaceful tone.",
    "energetic": "Be energetic and motivating.",
}

_GROUP_MOOD_TONE = {
    "joy": "playful",
    "playful": "playful",
    "sadness": "supportive",
    "anger": "calming",
    "hostile": "calming",
    "stress": "calming",
    "enthusiasm": "energetic",
    "surprise": "energetic",
}


def _up(value: float, delta: float) -> float:
    return min(value + delta, 1.0)


def _down(value: float, delta: float) -> float:
    return max(value - delta, 0.0)


def trend_from_tags(tags: Sequence[str]) -> EmotionTrend:
    """Dominant tag, share of emotional messages and direction over recent tags.

    Direction compares positive tags in the first and second half of the
    non-neutral tags.
    """
    total = len(tags)
    emotional = [t for t in tags if t and t != "neutral"]
    if not emotional:
        return EmotionTrend()

    dominant = Counter(emotional).most_common(1)[0][0]
    mid = len(emotional) // 2
    first = sum(1 for t in emotional[:mid] if t in POSITIVE_TAGS)
    second = sum(1 for t in emotional[mid:] if t in POSITIVE_TAGS)
    if second > first:
        direction = "improving"
    elif second < first:
        direction = "worsening"
    else:
        direction = "stable"
    return EmotionTrend(dominant=dominant, intensity=min(len(emotional) / total, 1.0), direction=direction)


class AdaptationEngine:
    def adapt(
        self,
        profile: EmotionalProfile | None = None,
        group_state: GroupEmotionalState | None = None,
        trend: EmotionTrend | None = None,
    ) -> AdaptationDirective:
        d = AdaptationDirective()
        avoid: list[str] = []
        if profile is not None:
            self._apply_profile(d, profile)
        if group_state is not None:
            avoid = self._apply_group(d, group_state)
        self._apply_trend(d, trend or EmotionTrend())

        d.formality = min(max(d.formality, 0.0), 1.0)
        d.energy = min(max(d.energy, 0.0), 1.0)
        d.empathy = min(max(d.empathy, 0.0), 1.0)
        d.humor = min(max(d.humor, 0.0), 1.0)
        d.prompt_hints = PromptHints(
            emotional_context=self._emotional_context(profile, group_state),
            behavior_instructions=self._behavior_instructions(d),
            avoid_topics=avoid,
            emphasize_topics=[t.topic for t in group_state.emotional_topics[:3]] if group_state else [],
        )
        logger.debug(
            "Directive: tone=%s empathy=%.2f modifier=%.2f",
            d.tone, d.empathy, d.probability_modifier,
        )
        return d

    @staticmethod
    def _apply_profile(d: AdaptationDirective, profile: EmotionalProfile) -> None:
        if profile.temperament == "sanguine":
            d.tone, d.energy, d.humor, d.match_energy = "playful", 0.8, 0.7, True
        elif profile.temperament == "choleric":
            d.tone, d.formality, d.empathy, d.deescalate = "serious", 0.6, 0.7, True
        elif profile.temperament == "melancholic":
            d.tone, d.empathy, d.energy, d.comfort = "supportive", 0.9, 0.3, True
        else:
            d.tone, d.formality, d.energy = "neutral", 0.5, 0.4

        role = profile.social_role
        if role == "entertainer":
            d.humor = _up(d.humor, 0.3)
            d.energy = _up(d.energy, 0.2)
        elif role == "supporter":
            d.empathy = _up(d.empathy, 0.3)
            d.tone = "supportive"
        elif role == "challenger":
            d.formality = _up(d.formality, 0.2)
            d.deescalate = True
        elif role == "leader":
            d.formality = _up(d.formality, 0.3)
            d.tone = "serious"
        elif role == "mediator":
            d.mediate = True
            d.empathy = _up(d.empathy, 0.2)
        elif role == "observer":
            d.probability_modifier *= 0.7
            d.formality = _up(d.formality, 0.1)

        if profile.expressiveness > 0.7:
            d.energy = _up(d.energy, 0.2)
            d.probability_modifier *= 1.3
        elif profile.expressiveness < 0.3:
            d.energy = _down(d.energy, 0.2)
            d.formality = _up(d.formality, 0.2)

    @staticmethod
    def _apply_group(d: AdaptationDirective, state: GroupEmotionalState) -> list[str]:
        tone = _GROUP_MOOD_TONE.get(state.dominant_mood)
        if tone == "playful":
            d.tone = tone
            d.humor = _up(d.humor, 0.3)
            d.energy = _up(d.energy, 0.3)
        elif tone == "supportive":
            d.tone = tone
            d.empathy = _up(d.empathy, 0.4)
            d.comfort = True
        elif tone == "calming":
            d.tone = tone
            d.deescalate = True
            d.energy = _down(d.energy, 0.3)
        elif tone == "energetic":
            d.tone = tone
            d.energy = _up(d.energy, 0.4)
            d.match_energy = True

        if state.harmony < 0.4:
            d.mediate = True
            d.empathy = _up(d.empathy, 0.3)
            d.tone = "supportive"
        if state.tension > 0.6:
            d.deescalate = True
            d.tone = "calming"
            d.humor = _down(d.humor, 0.2)
        if state.energy < 0.3:
            d.energize = True
            d.tone = "energetic"
            d.energy = _up(d.energy, 0.3)

        active = state.active_conflicts
        if not active:
            return []
        d.mediate = True
        d.deescalate = True
        d.tone = "calming"
        d.probability_modifier *= 1.5
        logger.debug("%d active conflicts, switching to mediation", len(active))
        return list(dict.fromkeys(c.topic for c in active if c.topic))

    @staticmethod
    def _apply_trend(d: AdaptationDirective, trend: EmotionTrend) -> None:
        if trend.dominant in ("sad", "negative"):
            d.comfort = True
            d.empathy = _up(d.empathy, 0.4)
            d.tone = "supportive"
        elif trend.dominant == "angry":
            d.deescalate = True
            d.tone = "calming"
            d.empathy = _up(d.empathy, 0.3)
        elif trend.dominant in ("excited", "positive"):
            d.match_energy = True
            d.energy = _up(d.energy, 0.3)
            d.tone = "playful"
        elif trend.dominant == "funny":
            d.humor = _up(d.humor, 0.4)
            d.tone = "playful"

        if trend.direction == "worsening":
            d.comfort = True
            d.energize = True
            d.probability_modifier *= 1.3
        elif trend.direction == "improving":
            d.match_energy = True
            d.energy = _up(d.energy, 0.2)

        if trend.intensity > 0.7:
            d.probability_modifier *= 1.4
            d.empathy = _up(d.empathy, 0.2)

    @staticmethod
    def _emotional_context(profile: EmotionalProfile | None, state: GroupEmotionalState | None) -> str:
        parts = []
        if profile is not None:
            parts.append(
                f"{profile.user_name} is {_TEMPERAMENT_TEXT[profile.temperament]}, "
                f"social role: {_ROLE_TEXT[profile.social_role]}."
            )
            if profile.typical_emotions:
                parts.append(f"Usually shows: {', '.join(profile.typical_emotions)}.")
        if state is not None:
            parts.append(f"Overall chat mood: {state.dominant_mood}.")
            if state.harmony < 0.5:
                parts.append("Harmony is low, disagreements are possible.")
            if state.tension > 0.5:
                parts.append("There is tension in the conversation.")
            if state.conflicts:
                parts.append(f"There are {len(state.conflicts)} conflict situations.")
        return " ".join(parts)

    @staticmethod
    def _behavior_instructions(d: AdaptationDirective) -> str:
        parts = []
        if d.tone in _TONE_TEXT:
            parts.append(_TONE_TEXT[d.tone])
        if d.empathy > 0.7:
            parts.append("Show more empathy and understanding.")
        if d.humor > 0.7:
            parts.append("Humor and jokes are welcome.")
        if d.formality > 0.6:
            parts.append("Keep a more formal tone.")
        if d.comfort:
            parts.append("Try to comfort and support.")
        if d.deescalate:
            parts.append("Help calm the situation down, avoid provocations.")
        if d.energize:
            parts.append("Try to lift the mood.")
        if d.mediate:
            parts.append("Act as a peacemaker and help find a compromise.")
        return " ".join(parts)
