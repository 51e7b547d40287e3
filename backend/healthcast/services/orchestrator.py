# healthcast/services/orchestrator.py
"""
Request-level forecasting pipeline.

    fetch (both sources, concurrently) -> aggregate -> classify
        -> insufficient: history only
        -> cached run:   serve it (usedCache)
        -> otherwise:    compute an ephemeral forecast, never persisted
                         (also when the cache cannot be read)

Only ``regenerate`` writes to the cache, and only after every read and all
computation has finished, so cancelling a request cannot leave a partial run.
"""
from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session, sessionmaker

from healthcast.config import Settings, get_settings
from healthcast.errors import CacheWriteConflict, ForecastEngineError, InsufficientHistory, SourceUnavailable
from healthcast.observability.metrics import FORECAST_REGENERATIONS, FORECAST_REQUESTS
from healthcast.schemas.forecast import ForecastResponse, ForecastRun, Granularity
from healthcast.schemas.history import HistorySummary
from healthcast.services.aggregation import (
    AggregatedSeries,
    DateRange,
    EventRecord,
    ImportedAggregateRecord,
    aggregate,
)
from healthcast.services.forecast import ForecastEngine, get_forecast_engine
from healthcast.services.history_summary import summarize_sources
from healthcast.services.prediction_cache import PredictionCache, cache_key
from healthcast.services.quality import QualityClassifier
from healthcast.services.sources import EventSource, ImportSource, SqlEventSource, SqlImportSource

logger = structlog.get_logger(__name__)


class ForecastOrchestrator:
    def __init__(
        self,
        events: EventSource,
        imports: ImportSource,
        cache: PredictionCache,
        engine: ForecastEngine,
        classifier: Optional[QualityClassifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.events = events
        self.imports = imports
        self.cache = cache
        self.engine = engine
        self.classifier = classifier or QualityClassifier(self.settings)

    def _horizon(self, periods_ahead: Optional[int]) -> int:
        if periods_ahead is None:
            return self.settings.DEFAULT_PERIODS_AHEAD
        if periods_ahead < 1:
            raise ValueError("periods_ahead must be >= 1")
        return periods_ahead

    async def _fetch(self, entity_key: str) -> Tuple[List[EventRecord], List[ImportedAggregateRecord]]:
        # either source failing fails the whole request
        events, imports = await asyncio.gather(
            asyncio.to_thread(self.events.fetch, entity_key),
            asyncio.to_thread(self.imports.fetch, entity_key),
        )
        return events, imports

    async def _aggregate(
        self,
        entity_key: str,
        location_key: Optional[int],
        granularity: Granularity,
        display_range: Optional[DateRange] = None,
    ) -> AggregatedSeries:
        events, imports = await self._fetch(entity_key)
        return aggregate(events, imports, granularity, display_range, location_key)

    async def summarize(self, entity_key: str, location_key: Optional[int] = None) -> HistorySummary:
        """Per-source counts and date spans behind an entity's series."""
        events, imports = await self._fetch(entity_key)
        return summarize_sources(entity_key, events, imports, location_key)

    async def get_forecast(
        self,
        entity_key: str,
        location_key: Optional[int],
        granularity: Granularity,
        display_range: Optional[DateRange] = None,
        periods_ahead: Optional[int] = None,
    ) -> ForecastResponse:
        horizon = self._horizon(periods_ahead)
        series = await self._aggregate(entity_key, location_key, granularity, display_range)
        quality = self.classifier.classify(series.full, granularity)

        response = ForecastResponse(
            entity_key=entity_key,
            location_key=location_key,
            granularity=granularity,
            historical_points=series.display,
            forecast_points=[],
            data_quality=quality,
            used_cache=False,
            status="insufficient_data",
            history_points_count=len(series.full),
            quality_thresholds=self.classifier.thresholds(granularity),
        )

        if quality == "insufficient":
            return self._done(response)

        try:
            cached = await asyncio.to_thread(self.cache.lookup, entity_key, location_key, granularity)
        except SourceUnavailable as exc:
            # history is already in hand; compute without the cache
            logger.warning("forecast.cache_bypassed", entity_key=entity_key, error=exc.message)
            cached = None
        if cached is not None:
            # the cached run is authoritative even when its horizon differs
            return self._done(self._with_run(
                response, cached, status="cached", used_cache=True, stale=self.cache.is_stale(cached), limit=horizon
            ))

        try:
            run = await asyncio.to_thread(
                self.engine.forecast,
                series.full,
                horizon,
                granularity,
                data_quality=quality,
                entity_key=entity_key,
                location_key=location_key,
            )
        except InsufficientHistory as exc:
            logger.info("forecast.degraded", reason=exc.code, entity_key=entity_key, **exc.details)
            return self._done(response.model_copy(update={"status": "insufficient_history"}))
        except ForecastEngineError as exc:
            logger.warning("forecast.degraded", reason=exc.code, entity_key=entity_key, error=exc.message)
            return self._done(response.model_copy(update={"status": "forecast_unavailable"}))

        return self._done(self._with_run(response, run, status="ok", used_cache=False, stale=False))

    @staticmethod
    def _with_run(
        response: ForecastResponse,
        run: ForecastRun,
        *,
        status: str,
        used_cache: bool,
        stale: bool,
        limit: Optional[int] = None,
    ) -> ForecastResponse:
        points = run.points[:limit] if limit is not None else run.points
        return response.model_copy(
            update={
                "forecast_points": points,
                "used_cache": used_cache,
                "stale": stale,
                "status": status,
                "accuracy": run.accuracy,
                "trend": run.trend,
                "seasonality_detected": run.seasonality_detected,
                "generated_at": run.generated_at,
            }
        )

    @staticmethod
    def _done(response: ForecastResponse) -> ForecastResponse:
        FORECAST_REQUESTS.labels(granularity=response.granularity, outcome=response.status).inc()
        logger.info(
            "forecast.served",
            entity_key=response.entity_key,
            location_key=response.location_key,
            status=response.status,
            used_cache=response.used_cache,
            data_quality=response.data_quality,
            forecast_points=len(response.forecast_points),
        )
        return response

    async def regenerate(
        self,
        entity_key: str,
        location_key: Optional[int],
        granularity: Granularity,
        periods_ahead: Optional[int] = None,
    ) -> ForecastRun:
        """
        Recompute and persist the run for a key: aggregate, classify, forecast,
        then replace the cached run in one write.

        Raises ``CacheWriteConflict`` if another regeneration for the key is in
        flight or committed first, and ``InsufficientHistory`` when the data
        cannot support a forecast; nothing is written in either case.
        """
        horizon = self._horizon(periods_ahead)
        key = cache_key(entity_key, location_key, granularity)
        try:
            with self.cache.regeneration_slot(key):
                expected = await asyncio.to_thread(self.cache.current_version, key)
                series = await self._aggregate(entity_key, location_key, granularity)
                quality = self.classifier.classify(series.full, granularity)
                if quality == "insufficient":
                    raise InsufficientHistory(
                        len(series.full), self.classifier.thresholds(granularity).moderate_min_points, granularity
                    )
                run = await asyncio.to_thread(
                    self.engine.forecast,
                    series.full,
                    horizon,
                    granularity,
                    data_quality=quality,
                    entity_key=entity_key,
                    location_key=location_key,
                )
                stored = await asyncio.to_thread(self.cache.regenerate, run, expected)
        except CacheWriteConflict:
            FORECAST_REGENERATIONS.labels(outcome="conflict").inc()
            raise
        except InsufficientHistory:
            FORECAST_REGENERATIONS.labels(outcome="insufficient_history").inc()
            raise
        except Exception:
            FORECAST_REGENERATIONS.labels(outcome="error").inc()
            raise

        FORECAST_REGENERATIONS.labels(outcome="ok").inc()
        return stored


def build_orchestrator(
    session_factory: Optional[sessionmaker[Session]] = None,
    settings: Optional[Settings] = None,
    engine: Optional[ForecastEngine] = None,
) -> ForecastOrchestrator:
    """Orchestrator wired to the SQL sources and cache."""
    if session_factory is None:
        from healthcast.db.session import get_sessionmaker  # pylint: disable=import-outside-toplevel

        session_factory = get_sessionmaker()
    settings = settings or get_settings()
    return ForecastOrchestrator(
        events=SqlEventSource(session_factory),
        imports=SqlImportSource(session_factory),
        cache=PredictionCache(session_factory, settings),
        engine=engine or get_forecast_engine(settings),
        settings=settings,
    )
