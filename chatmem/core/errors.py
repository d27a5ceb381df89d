"""Error taxonomy for the memory engine.

Only ``ConfigurationError`` is meant to reach the operator. Everything else
is caught at the orchestration boundary and degrades to partial context or
silence.
"""

from __future__ import annotations

import logging
import warnings

logger = logging.getLogger(__name__)


class ChatMemoryError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ChatMemoryError):
    """Invalid scalar configuration at startup. Fatal."""


class TransientIOFailure(ChatMemoryError):
    """A store read/write or a generation call failed or timed out."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{operation} failed{detail}")


class DataIntegrityWarning(UserWarning):
    """Malformed persisted field or missing expected row; record treated as absent."""


def report_integrity(message: str, *args) -> None:
    """Log and emit a DataIntegrityWarning without raising."""
    text = message % args if args else message
    logger.warning("Data integrity: %s", text)
    warnings.warn(text, DataIntegrityWarning, stacklevel=2)


def clamp_logged(value: float, low: float, high: float, name: str = "value") -> float:
    """Clamp ``value`` into [low, high], logging when it was out of range."""
    if value < low or value > high:
        logger.warning("Invariant violation: %s=%.4f outside [%s, %s], clamped", name, value, low, high)
        return max(low, min(high, value))
    return value
