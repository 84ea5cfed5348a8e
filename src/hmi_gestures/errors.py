"""Exception types raised by the gesture engine."""

from __future__ import annotations


class GestureEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(GestureEngineError, ValueError):
    """Invalid registration or engine configuration.

    Raised synchronously at registration/config time, never from a tick.
    """


class IngestionError(GestureEngineError, ValueError):
    """A malformed input sample (missing or non-numeric field)."""


class PatternEvaluationError(GestureEngineError):
    """A user-supplied detector failed or returned an unusable result."""
