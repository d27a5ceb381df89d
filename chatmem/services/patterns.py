"""Static fallback replies used when generation is unavailable."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

from chatmem.lexicons import ConversationLexicon, FallbackPattern, TermSet, load_conversation_lexicon

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternMatch:
    pattern_id: str
    response: str
    score: float


class PatternMatcher:
    """Pick the best scoring fallback pattern and one of its responses.

    Score is the pattern weight times the number of its keywords found. The
    response is drawn from the injected RNG, so a seeded RNG gives a
    reproducible reply.
    """

    def __init__(self, lexicon: ConversationLexicon | None = None, rng: random.Random | None = None):
        lexicon = lexicon or load_conversation_lexicon()
        self.rng = rng or random.Random()
        self._patterns: list[tuple[FallbackPattern, TermSet]] = [
            (p, TermSet([k.lower() for k in p.keywords])) for p in lexicon.fallback_patterns
        ]

    def match(self, text: str) -> PatternMatch | None:
        lowered = text.lower()
        best: tuple[FallbackPattern, float] | None = None
        for pattern, terms in self._patterns:
            hits = terms.count(lowered)
            if not hits:
                continue
            score = pattern.weight * hits
            if best is None or score > best[1]:
                best = (pattern, score)
        if best is None:
            return None
        pattern, score = best
        response = self.rng.choice(pattern.responses)
        logger.debug("Fallback pattern %s matched (%.2f)", pattern.id, score)
        return PatternMatch(pattern_id=pattern.id, response=response, score=score)

    def __len__(self) -> int:
        return len(self._patterns)
