"""
Forecasting errors.

Everything raised by the forecasting core derives from ``ForecastError`` so
routers can map the whole family onto the response envelope in one place.
"""

from typing import Any, Dict, Optional


class ForecastError(Exception):
    """Base class for forecasting errors."""

    code = "FORECAST_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InsufficientHistory(ForecastError):
    """The series is shorter than the engine's hard minimum for its granularity."""

    code = "INSUFFICIENT_HISTORY"

    def __init__(self, available: int, required: int, granularity: str):
        super().__init__(
            f"Need at least {required} {granularity} periods to forecast, found {available}",
            {"available": available, "required": required, "granularity": granularity},
        )
        self.available = available
        self.required = required


class SourceUnavailable(ForecastError):
    """An event or import source could not be read. Retryable."""

    code = "SOURCE_UNAVAILABLE"

    def __init__(self, source: str, reason: str):
        super().__init__(f"Source '{source}' is unavailable: {reason}", {"source": source, "retryable": True})
        self.source = source


class CacheWriteConflict(ForecastError):
    """Another regeneration for the same key is in flight or has already won."""

    code = "REGENERATION_CONFLICT"

    def __init__(self, cache_key: str):
        super().__init__(
            "A concurrent regeneration completed; re-fetch if a fresher result is needed.",
            {"cache_key": cache_key},
        )
        self.cache_key = cache_key


class InvariantViolation(ForecastError):
    """Bound repair failed to establish 0 <= lower <= predicted <= upper."""

    code = "INVARIANT_VIOLATION"


class ForecastEngineError(ForecastError):
    """A pluggable engine produced output that cannot be used at all."""

    code = "FORECAST_ENGINE_ERROR"
