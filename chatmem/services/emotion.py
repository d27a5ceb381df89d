"""Lexicon-based emotion scoring.

Pure, synchronous and deterministic: the same text, window and lexicon always
produce the same ``EmotionScore``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from chatmem.lexicons import ConversationLexicon, EmotionLexicon, TermSet, load_conversation_lexicon, load_emotion_lexicon
from chatmem.schemas import (
    CONTEXTUAL_DIMENSIONS,
    PRIMARY_DIMENSIONS,
    SOCIAL_DIMENSIONS,
    ContextualEmotions,
    EmotionScore,
    PrimaryEmotions,
    SocialEmotions,
)

logger = logging.getLogger(__name__)

NEUTRAL = "neutral"
DOMINANT_THRESHOLD = 0.1


def _cap(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class EmotionScorer:
    """Map text to a 20-dimension emotion vector plus summary metrics."""

    PRIMARY_SCALE = 0.5
    SOCIAL_SCALE = 0.6
    RECENT_WINDOW = 3

    _CAPS = re.compile(r"[A-ZА-ЯЁ]")
    _INDICATORS = re.compile("[!?\U0001F300-\U0001FAFF\u2600-\u27BF]")

    def __init__(self, lexicon: EmotionLexicon | None = None):
        self.lexicon = lexicon or load_emotion_lexicon()
        self._primary = {d: TermSet(self.lexicon.primary.get(d, [])) for d in PRIMARY_DIMENSIONS}
        self._social = {d: TermSet(self.lexicon.social.get(d, [])) for d in SOCIAL_DIMENSIONS}
        self._contextual = {d: TermSet(self.lexicon.contextual.get(d, [])) for d in CONTEXTUAL_DIMENSIONS}
        self._dispute = TermSet(self.lexicon.dispute_markers)
        self._laughter = re.compile(self.lexicon.laughter_pattern)

    def score(self, text: str, recent_window: Sequence[str] | None = None) -> EmotionScore:
        if not text or not text.strip():
            return EmotionScore(confidence=0.05)

        lowered = text.lower()
        primary = {d: _cap(ts.count(lowered) * self.PRIMARY_SCALE) for d, ts in self._primary.items()}
        social = self._score_social(lowered, recent_window)
        contextual = self._score_contextual(text, lowered)

        dims = {**primary, **social, **contextual}
        dominant, peak = NEUTRAL, 0.0
        for name, value in dims.items():
            if value > peak:
                dominant, peak = name, value
        if peak <= DOMINANT_THRESHOLD:
            dominant = NEUTRAL

        exclamations = text.count("!")
        caps_ratio = self._caps_ratio(text)
        intensity = _cap(peak + exclamations * 0.1 + caps_ratio * 0.5 + min(len(text) / 100, 1.0) * 0.2)

        valence = (
            primary["joy"] + primary["trust"] + primary["surprise"] * 0.5
            + social["friendly"] + social["supportive"] + social["playful"]
            - (primary["sadness"] + primary["anger"] + primary["fear"] + primary["disgust"]
               + social["hostile"] + social["sarcastic"] * 0.3)
        ) * 0.5
        valence = max(-1.0, min(1.0, valence))

        arousal = _cap(
            primary["anger"] + primary["fear"] + primary["joy"] + primary["surprise"]
            + contextual["enthusiasm"] + contextual["stress"]
            - (primary["sadness"] + primary["trust"] + contextual["boredom"]) * 0.5
        )

        indicators = len(self._INDICATORS.findall(text))
        confidence = max(0.1, min(indicators * 0.1 + min(len(text) / 50, 1.0) * 0.3, 0.9))
        if dominant == NEUTRAL:
            confidence *= 0.5

        return EmotionScore(
            primary=PrimaryEmotions(**primary),
            social=SocialEmotions(**social),
            contextual=ContextualEmotions(**contextual),
            dominant=dominant,
            intensity=intensity,
            valence=valence,
            arousal=arousal,
            confidence=confidence,
        )

    def _score_social(self, lowered: str, recent_window: Sequence[str] | None) -> dict[str, float]:
        social = {d: _cap(ts.count(lowered) * self.SOCIAL_SCALE) for d, ts in self._social.items()}
        if recent_window:
            recent = " ".join(t.lower() for t in list(recent_window)[-self.RECENT_WINDOW:])
            if self._dispute.any(recent):
                social["serious"] = _cap(social["serious"] + 0.2)
            if len(self._laughter.findall(recent)) > 2:
                social["playful"] = _cap(social["playful"] + 0.3)
        return social

    def _score_contextual(self, text: str, lowered: str) -> dict[str, float]:
        hits = {d: ts.count(lowered) for d, ts in self._contextual.items()}
        exclamations = text.count("!")
        questions = text.count("?")
        return {
            "enthusiasm": _cap(exclamations * 0.3 + self._caps_ratio(text) * 2 + hits["enthusiasm"] * 0.4),
            "boredom": _cap(hits["boredom"] * 0.3),
            "stress": _cap(hits["stress"] * 0.4),
            "curiosity": _cap(questions * 0.2 + hits["curiosity"] * 0.3),
            "confidence": _cap(hits["confidence"] * 0.4),
            "uncertainty": _cap(hits["uncertainty"] * 0.4),
        }

    def _caps_ratio(self, text: str) -> float:
        return len(self._CAPS.findall(text)) / len(text) if text else 0.0


class EmotionTagger:
    """Coarse single-label tag stored alongside each message."""

    def __init__(self, lexicon: ConversationLexicon | None = None, aliases: Sequence[str] = ()):
        self.lexicon = lexicon or load_conversation_lexicon()
        self._categories = [
            (tag, TermSet(self.lexicon.emotion_tags.get(tag, [])))
            for tag in ("positive", "negative", "excited", "friendly")
        ]
        self._aliases = TermSet(list(aliases))

    def tag(self, text: str) -> str:
        lowered = text.lower()
        for tag, terms in self._categories:
            if terms.any(lowered):
                return tag
        caps = len(EmotionScorer._CAPS.findall(text))
        if text.count("!") >= 2 or (text and caps > len(text) * 0.3):
            return "excited"
        if "?" in text:
            return "curious"
        if self._aliases.any(lowered):
            return "engaging"
        return NEUTRAL
