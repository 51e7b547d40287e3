# healthcast/services/prediction_cache.py
"""
Prediction cache: the latest authoritative forecast per (entity, location,
granularity) key.

Each key owns exactly one ``forecast_runs`` row. Regeneration rewrites that
row and its points inside a single transaction guarded by a version
compare-and-swap, so readers see either the previous run or the new one.
In-process callers additionally take a per-key regeneration slot so a second
regeneration for a busy key is rejected before any work is done.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from healthcast.config import Settings, get_settings
from healthcast.errors import CacheWriteConflict, SourceUnavailable
from healthcast.models.forecast_run import CachedForecastPoint, CachedForecastRun
from healthcast.schemas.forecast import AccuracyMetrics, ForecastPoint, ForecastRun, Granularity

logger = structlog.get_logger(__name__)

_SLOTS: Dict[str, threading.Lock] = {}
_SLOTS_GUARD = threading.Lock()


def cache_key(entity_key: str, location_key: Optional[int], granularity: Granularity) -> str:
    loc = "*" if location_key is None else str(location_key)
    return f"{entity_key}|{loc}|{granularity}"


def _slot(key: str) -> threading.Lock:
    with _SLOTS_GUARD:
        lock = _SLOTS.get(key)
        if lock is None:
            lock = _SLOTS[key] = threading.Lock()
        return lock


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _to_run(row: CachedForecastRun) -> ForecastRun:
    return ForecastRun(
        entity_key=row.entity_key,
        location_key=row.location_key,
        granularity=row.granularity,
        generated_at=_as_utc(row.generated_at),
        points=[
            ForecastPoint(
                period=p.period,
                predicted_value=p.predicted_value,
                lower_bound=p.lower_bound,
                upper_bound=p.upper_bound,
                confidence_level=p.confidence_level,
            )
            for p in row.points
        ],
        accuracy=AccuracyMetrics(mse=row.mse, rmse=row.rmse, mae=row.mae, r_squared=row.r_squared),
        trend=row.trend,
        seasonality_detected=bool(row.seasonality_detected),
        data_quality=row.data_quality,
        engine=row.engine,
        model_version=row.model_version,
        version=row.version,
    )


def _run_fields(run: ForecastRun) -> dict:
    return {
        "entity_key": run.entity_key,
        "location_key": run.location_key,
        "granularity": run.granularity,
        "generated_at": run.generated_at,
        "engine": run.engine,
        "model_version": run.model_version,
        "periods_ahead": len(run.points),
        "mse": run.accuracy.mse,
        "rmse": run.accuracy.rmse,
        "mae": run.accuracy.mae,
        "r_squared": run.accuracy.r_squared,
        "trend": run.trend,
        "seasonality_detected": run.seasonality_detected,
        "data_quality": run.data_quality,
    }


def _point_rows(run_id: int, run: ForecastRun) -> list[CachedForecastPoint]:
    return [
        CachedForecastPoint(
            run_id=run_id,
            position=i,
            period=p.period,
            predicted_value=p.predicted_value,
            lower_bound=p.lower_bound,
            upper_bound=p.upper_bound,
            confidence_level=p.confidence_level,
        )
        for i, p in enumerate(run.points)
    ]


class PredictionCache:
    def __init__(self, session_factory: sessionmaker[Session], settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    # ---------- reads ----------

    def lookup(self, entity_key: str, location_key: Optional[int], granularity: Granularity) -> Optional[ForecastRun]:
        key = cache_key(entity_key, location_key, granularity)
        try:
            with self.session_factory() as db:
                # one statement so the run and its points come from the same snapshot
                row = (
                    db.execute(
                        select(CachedForecastRun)
                        .options(joinedload(CachedForecastRun.points))
                        .where(CachedForecastRun.cache_key == key)
                    )
                    .unique()
                    .scalar_one_or_none()
                )
                run = _to_run(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("cache.read_failed", cache_key=key, error=str(exc))
            raise SourceUnavailable("prediction_cache", str(exc)) from exc

        if run is None:
            logger.info("cache.miss", cache_key=key)
        else:
            logger.info("cache.hit", cache_key=key, version=run.version, points=len(run.points))
        return run

    def current_version(self, key: str) -> int:
        """Version of the stored run for ``key``; 0 when nothing is cached."""
        try:
            with self.session_factory() as db:
                version = db.execute(
                    select(CachedForecastRun.version).where(CachedForecastRun.cache_key == key)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.error("cache.read_failed", cache_key=key, error=str(exc))
            raise SourceUnavailable("prediction_cache", str(exc)) from exc
        return int(version or 0)

    def is_stale(self, run: ForecastRun, now: Optional[datetime] = None) -> bool:
        max_age = self.settings.CACHE_MAX_AGE_HOURS
        if max_age is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - _as_utc(run.generated_at) > timedelta(hours=max_age)

    # ---------- writes ----------

    @contextmanager
    def regeneration_slot(self, key: str) -> Iterator[None]:
        """Hold the in-process regeneration slot for ``key`` or fail fast."""
        lock = _slot(key)
        if not lock.acquire(blocking=False):
            logger.warning("cache.regeneration_conflict", cache_key=key, reason="in_flight")
            raise CacheWriteConflict(key)
        try:
            yield
        finally:
            lock.release()

    def regenerate(self, run: ForecastRun, expected_version: Optional[int] = None) -> ForecastRun:
        """
        Replace the cached run for the run's key with ``run``.

        With ``expected_version`` the write only succeeds if the stored version
        still matches (0 meaning nothing stored yet); otherwise another
        regeneration won and ``CacheWriteConflict`` is raised with nothing
        written. Database failures roll back and surface as ``SourceUnavailable``.
        """
        key = cache_key(run.entity_key, run.location_key, run.granularity)
        fields = _run_fields(run)

        with self.session_factory() as db:
            try:
                existing = db.execute(
                    select(CachedForecastRun.id, CachedForecastRun.version).where(CachedForecastRun.cache_key == key)
                ).one_or_none()
                current = existing.version if existing is not None else 0
                if expected_version is not None and current != expected_version:
                    raise CacheWriteConflict(key)

                if existing is None:
                    row = CachedForecastRun(cache_key=key, version=1, **fields)
                    db.add(row)
                    db.flush()
                    run_id, new_version = row.id, 1
                else:
                    result = db.execute(
                        update(CachedForecastRun)
                        .where(CachedForecastRun.id == existing.id, CachedForecastRun.version == current)
                        .values(version=current + 1, **fields)
                    )
                    if result.rowcount != 1:
                        raise CacheWriteConflict(key)
                    db.execute(delete(CachedForecastPoint).where(CachedForecastPoint.run_id == existing.id))
                    run_id, new_version = existing.id, current + 1

                db.add_all(_point_rows(run_id, run))
                db.commit()
            except CacheWriteConflict:
                db.rollback()
                logger.warning("cache.regeneration_conflict", cache_key=key, expected_version=expected_version)
                raise
            except IntegrityError as exc:
                # another writer inserted the first run for this key
                db.rollback()
                logger.warning("cache.regeneration_conflict", cache_key=key, error=str(exc.orig))
                raise CacheWriteConflict(key) from exc
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("cache.regeneration_failed", cache_key=key)
                raise SourceUnavailable("prediction_cache", str(exc)) from exc

        logger.info("cache.regenerated", cache_key=key, version=new_version, points=len(run.points))
        return run.model_copy(update={"version": new_version})
