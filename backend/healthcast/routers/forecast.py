# healthcast/routers/forecast.py
"""
Forecast API.

GET  /api/forecast            history + forecast for a key (cache first, never writes)
GET  /api/forecast/cached     the stored run for a key, 404 when nothing is cached
POST /api/forecast/regenerate recompute and replace the stored run for a key

Responses use the standard envelope; domain errors map onto it by code.
"""
from __future__ import annotations

import asyncio
from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from healthcast.config import get_settings
from healthcast.errors import (
    CacheWriteConflict,
    ForecastEngineError,
    InsufficientHistory,
    SourceUnavailable,
)
from healthcast.schemas.common import fail, fail_from, meta_now, ok
from healthcast.schemas.forecast import Granularity, RegenerateIn
from healthcast.services.aggregation import DateRange
from healthcast.services.orchestrator import ForecastOrchestrator, build_orchestrator

router = APIRouter(prefix="/api/forecast", tags=["forecast"])
logger = structlog.get_logger(__name__)


def get_orchestrator() -> ForecastOrchestrator:
    return build_orchestrator()


def _horizon_error(periods_ahead: Optional[int], meta):
    max_ahead = get_settings().MAX_PERIODS_AHEAD
    if periods_ahead is not None and periods_ahead > max_ahead:
        return fail(
            code="INVALID_HORIZON",
            message=f"periods_ahead must be <= {max_ahead}",
            status_code=422,
            details={"periods_ahead": periods_ahead, "max": max_ahead},
            meta=meta,
        )
    return None


@router.get("")
async def get_forecast(
    entity_key: str = Query(..., min_length=1, max_length=64),
    location_id: Optional[int] = Query(None, description="Omit for a system-wide series"),
    granularity: Granularity = Query("monthly"),
    start_date: Optional[date] = Query(None, description="Display window start (history only)"),
    end_date: Optional[date] = Query(None, description="Display window end (history only)"),
    periods_ahead: Optional[int] = Query(None, ge=1),
    orchestrator: ForecastOrchestrator = Depends(get_orchestrator),
):
    meta = meta_now(
        entity_key=entity_key,
        location_id=location_id,
        granularity=granularity,
        start_date=start_date,
        end_date=end_date,
        periods_ahead=periods_ahead,
    )
    if start_date and end_date and start_date > end_date:
        return fail(code="INVALID_RANGE", message="start_date must be <= end_date", status_code=422, meta=meta)
    horizon_error = _horizon_error(periods_ahead, meta)
    if horizon_error is not None:
        return horizon_error

    try:
        result = await orchestrator.get_forecast(
            entity_key,
            location_id,
            granularity,
            DateRange(start_date, end_date),
            periods_ahead,
        )
    except SourceUnavailable as exc:
        return fail_from(exc, 503, meta)
    return ok(data=result.model_dump(), meta=meta)


@router.get("/cached")
async def get_cached_forecast(
    entity_key: str = Query(..., min_length=1, max_length=64),
    location_id: Optional[int] = Query(None),
    granularity: Granularity = Query("monthly"),
    orchestrator: ForecastOrchestrator = Depends(get_orchestrator),
):
    meta = meta_now(entity_key=entity_key, location_id=location_id, granularity=granularity)
    cache = orchestrator.cache
    try:
        run = await asyncio.to_thread(cache.lookup, entity_key, location_id, granularity)
    except SourceUnavailable as exc:
        return fail_from(exc, 503, meta)
    if run is None:
        return fail(
            code="NOT_CACHED",
            message=f"No cached forecast for '{entity_key}' ({granularity}); regenerate to create one.",
            status_code=404,
            meta=meta,
        )
    data = run.model_dump()
    data["stale"] = cache.is_stale(run)
    return ok(data=data, meta=meta)


@router.post("/regenerate")
async def regenerate_forecast(
    body: RegenerateIn,
    orchestrator: ForecastOrchestrator = Depends(get_orchestrator),
):
    meta = meta_now(
        entity_key=body.entity_key,
        location_id=body.location_id,
        granularity=body.granularity,
        periods_ahead=body.periods_ahead,
    )
    horizon_error = _horizon_error(body.periods_ahead, meta)
    if horizon_error is not None:
        return horizon_error

    try:
        run = await orchestrator.regenerate(body.entity_key, body.location_id, body.granularity, body.periods_ahead)
    except CacheWriteConflict as exc:
        return fail_from(exc, 409, meta)
    except InsufficientHistory as exc:
        return fail_from(exc, 422, meta)
    except SourceUnavailable as exc:
        return fail_from(exc, 503, meta)
    except ForecastEngineError as exc:
        return fail_from(exc, 502, meta)

    logger.info("forecast.regenerate_requested", entity_key=body.entity_key, version=run.version)
    return ok(data=run.model_dump(), meta=meta)
