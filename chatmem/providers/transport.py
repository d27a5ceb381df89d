"""Chat transport interface."""

from abc import ABC, abstractmethod


class Transport(ABC):
    """Delivers outbound replies to a chat."""

    @abstractmethod
    async def send(self, chat_id: str, text: str) -> str:
        """Send ``text`` and return the platform message id."""
