"""Detect an author repeating the same message."""

from __future__ import annotations

import re
from collections.abc import Sequence

from Levenshtein import distance as levenshtein_distance

from chatmem.schemas import RepetitionResult, StoredMessage

WINDOW = 15
SIMILARITY_THRESHOLD = 0.85

_PUNCT = re.compile(r"[^\w\s]", re.UNICODE)
_SPACES = re.compile(r"\s+")


def normalize(text: str) -> str:
    return _SPACES.sub(" ", _PUNCT.sub(" ", text.lower())).strip()


def similarity(a: str, b: str) -> float:
    """1 - normalized edit distance of the normalized texts."""
    a, b = normalize(a), normalize(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


def level_for(count: int) -> str:
    if count >= 6:
        return "high"
    if count >= 4:
        return "moderate"
    if count >= 2:
        return "mild"
    return "none"


class RepetitionDetector:
    def __init__(self, window: int = WINDOW, threshold: float = SIMILARITY_THRESHOLD):
        self.window = window
        self.threshold = threshold

    def check(self, text: str, author: str, history: Sequence[StoredMessage]) -> RepetitionResult:
        """Count how many of the author's last messages repeat ``text``.

        ``history`` must not include the message being checked.
        """
        previous = [m for m in history if m.author == author and not m.from_agent][-self.window:]
        target = normalize(text)
        similar = [
            m.content for m in previous
            if normalize(m.content) == target or similarity(m.content, text) > self.threshold
        ]
        count = 1 + len(similar)
        return RepetitionResult(count=count, level=level_for(count), similar_messages=similar)
