from .completion_event import CompletionEvent
from .imported_aggregate import ImportedAggregate
from .forecast_run import CachedForecastPoint, CachedForecastRun


__all__ = ["CompletionEvent", "ImportedAggregate", "CachedForecastRun", "CachedForecastPoint"]
