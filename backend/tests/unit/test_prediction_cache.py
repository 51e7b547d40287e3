import threading
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from healthcast.config import Settings
from healthcast.db.session import build_engine
from healthcast.errors import CacheWriteConflict, SourceUnavailable
from healthcast.models import CachedForecastPoint, CachedForecastRun
from healthcast.schemas.forecast import AccuracyMetrics, ForecastPoint, ForecastRun
from healthcast.services.prediction_cache import PredictionCache, cache_key


def make_run(entity_key="hiv", location_key=None, values=(10, 11, 12), generated_at=None):
    return ForecastRun(
        entity_key=entity_key,
        location_key=location_key,
        granularity="monthly",
        generated_at=generated_at or datetime.now(timezone.utc),
        points=[
            ForecastPoint(
                period=date(2025, i + 1, 1), predicted_value=v, lower_bound=max(v - 3, 0), upper_bound=v + 3
            )
            for i, v in enumerate(values)
        ],
        accuracy=AccuracyMetrics(mse=4.0, rmse=2.0, mae=1.5, r_squared=0.6),
        trend="increasing",
        seasonality_detected=False,
        data_quality="moderate",
        engine="seasonal",
        model_version="seasonal-trend-0.1",
    )


@pytest.fixture
def cache(session_factory):
    return PredictionCache(session_factory, Settings())


def _run_rows(db, key):
    return db.execute(select(func.count()).select_from(CachedForecastRun).where(CachedForecastRun.cache_key == key)).scalar()


def _point_rows(db):
    return db.execute(select(func.count()).select_from(CachedForecastPoint)).scalar()


def test_cache_key_format():
    assert cache_key("hiv", None, "monthly") == "hiv|*|monthly"
    assert cache_key("tb", 7, "daily") == "tb|7|daily"


def test_lookup_miss_returns_none(cache):
    assert cache.lookup("hiv", None, "monthly") is None


def test_regenerate_then_lookup_round_trip(cache):
    stored = cache.regenerate(make_run())
    assert stored.version == 1

    run = cache.lookup("hiv", None, "monthly")
    assert run is not None
    assert run.version == 1
    assert [p.predicted_value for p in run.points] == [10, 11, 12]
    assert run.generated_at.tzinfo is not None


def test_regenerate_twice_leaves_exactly_one_run(cache, db):
    cache.regenerate(make_run(values=(1, 2, 3, 4)))
    second = cache.regenerate(make_run(values=(5, 6)))

    key = cache_key("hiv", None, "monthly")
    assert second.version == 2
    assert _run_rows(db, key) == 1
    # replaced points leave no orphans behind
    assert _point_rows(db) == 2
    assert [p.predicted_value for p in cache.lookup("hiv", None, "monthly").points] == [5, 6]


def test_stale_expected_version_is_rejected_and_nothing_written(cache):
    cache.regenerate(make_run(values=(1, 2, 3)))
    with pytest.raises(CacheWriteConflict):
        cache.regenerate(make_run(values=(9, 9, 9)), expected_version=0)

    run = cache.lookup("hiv", None, "monthly")
    assert run.version == 1
    assert [p.predicted_value for p in run.points] == [1, 2, 3]


def test_matching_expected_version_succeeds(cache):
    key = cache_key("hiv", None, "monthly")
    assert cache.current_version(key) == 0
    cache.regenerate(make_run(), expected_version=0)
    cache.regenerate(make_run(values=(4,)), expected_version=1)
    assert cache.current_version(key) == 2


def test_keys_are_independent(cache, db):
    cache.regenerate(make_run(location_key=None))
    cache.regenerate(make_run(location_key=3))
    cache.regenerate(make_run(entity_key="tb"))

    assert _run_rows(db, cache_key("hiv", None, "monthly")) == 1
    assert _run_rows(db, cache_key("hiv", 3, "monthly")) == 1
    assert cache.lookup("hiv", 4, "monthly") is None


def test_regeneration_slot_rejects_second_holder(cache):
    key = cache_key("hiv", None, "monthly")
    with cache.regeneration_slot(key):
        with pytest.raises(CacheWriteConflict) as exc:
            with cache.regeneration_slot(key):
                pass
        assert "concurrent regeneration" in exc.value.message
        # other keys are never blocked
        with cache.regeneration_slot(cache_key("tb", None, "monthly")):
            pass
    # released after the block
    with cache.regeneration_slot(key):
        pass


def test_runs_never_go_stale_by_default(cache):
    old = make_run(generated_at=datetime.now(timezone.utc) - timedelta(days=400))
    assert cache.is_stale(old) is False


def test_max_age_marks_old_runs_stale(session_factory):
    cache = PredictionCache(session_factory, Settings(CACHE_MAX_AGE_HOURS=24))
    assert cache.is_stale(make_run(generated_at=datetime.now(timezone.utc) - timedelta(hours=30))) is True
    assert cache.is_stale(make_run()) is False


def test_first_writers_from_separate_caches_race_to_one_run(session_factory, db):
    # no shared regeneration slot: only the database decides the winner
    caches = [PredictionCache(session_factory, Settings()) for _ in range(2)]
    barrier = threading.Barrier(2)
    outcomes = []

    def _write(cache, values):
        barrier.wait()
        try:
            outcomes.append(cache.regenerate(make_run(values=values), expected_version=0).version)
        except CacheWriteConflict:
            outcomes.append("conflict")

    threads = [
        threading.Thread(target=_write, args=(caches[0], (1, 1, 1))),
        threading.Thread(target=_write, args=(caches[1], (2, 2, 2))),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes, key=str) == [1, "conflict"]
    assert _run_rows(db, cache_key("hiv", None, "monthly")) == 1
    assert _point_rows(db) == 3


def test_readers_never_see_a_missing_or_partial_run(cache):
    cache.regenerate(make_run(values=(1, 1, 1)))
    done = threading.Event()
    errors = []

    def _writer():
        try:
            for v in range(2, 30):
                cache.regenerate(make_run(values=(v, v, v)))
        except Exception as exc:
            errors.append(exc)
        finally:
            done.set()

    writer = threading.Thread(target=_writer)
    writer.start()
    seen = []
    while not done.is_set():
        run = cache.lookup("hiv", None, "monthly")
        assert run is not None
        assert len(run.points) == 3
        # points always belong to the run row they were read with
        assert {p.predicted_value for p in run.points} == {run.version}
        seen.append(run.version)
    writer.join(timeout=30)

    assert errors == []
    assert seen == sorted(seen)
    assert cache.lookup("hiv", None, "monthly").version == 29


def test_database_failures_surface_as_retryable(tmp_path):
    broken = build_engine(f"sqlite:///{tmp_path / 'no-tables.db'}")
    cache = PredictionCache(sessionmaker(bind=broken, future=True), Settings())
    try:
        with pytest.raises(SourceUnavailable):
            cache.current_version(cache_key("hiv", None, "monthly"))
        with pytest.raises(SourceUnavailable) as exc:
            cache.regenerate(make_run())
    finally:
        broken.dispose()
    assert exc.value.source == "prediction_cache"
