"""chatmem - conversational memory and behavioral adaptation for a group-chat persona."""

from chatmem._core import ChatMemory
from chatmem.core.config import Settings, get_settings, load_settings
from chatmem.core.errors import ConfigurationError, DataIntegrityWarning, TransientIOFailure
from chatmem.core.logging import setup_logging
from chatmem.providers import GenerationProvider, OpenAIGenerator, Transport
from chatmem.schemas import IncomingMessage, TurnOutcome

__version__ = "0.1.0"

__all__ = [
    "ChatMemory",
    "Settings",
    "get_settings",
    "load_settings",
    "ConfigurationError",
    "DataIntegrityWarning",
    "TransientIOFailure",
    "setup_logging",
    "GenerationProvider",
    "OpenAIGenerator",
    "Transport",
    "IncomingMessage",
    "TurnOutcome",
]
