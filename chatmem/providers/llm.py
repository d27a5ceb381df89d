"""Generation provider interface."""

from abc import ABC, abstractmethod


class GenerationProvider(ABC):
    """Produces a reply for an assembled prompt.

    Implementations may return None or raise; the caller treats both as
    "no generated reply" and falls back to static patterns.
    """

    model: str = "unknown"

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        style_hints: dict | None = None,
    ) -> str | None:
        """Return the reply text, or None when nothing usable was produced."""
