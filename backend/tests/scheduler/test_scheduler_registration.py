# backend/tests/scheduler/test_scheduler_registration.py
from datetime import date

import pytest

from healthcast.config import Settings
from healthcast.scheduler.jobs import parse_target, regenerate_forecasts
from healthcast.scheduler.setup import configure_jobs, scheduler
from healthcast.services.aggregation import ImportedAggregateRecord
from healthcast.services.forecast import SeasonalTrendEngine
from healthcast.services.orchestrator import ForecastOrchestrator
from healthcast.services.prediction_cache import PredictionCache
from healthcast.services.sources import InMemoryEventSource, InMemoryImportSource


def test_configure_jobs_registers_regeneration_job() -> None:
    # Start from a clean slate so repeated test runs don't accumulate jobs
    scheduler.remove_all_jobs()

    configure_jobs()

    job_ids = {job.id for job in scheduler.get_jobs()}
    assert "regenerate-forecasts" in job_ids


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("hiv:*:monthly", ("hiv", None, "monthly")),
        ("hiv::daily", ("hiv", None, "daily")),
        ("tb:12:monthly", ("tb", 12, "monthly")),
        ("tb:north:monthly", None),
        ("tb:1:weekly", None),
        ("hiv", None),
    ],
)
def test_parse_target(raw, expected):
    assert parse_target(raw) == expected


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])  # force asyncio; avoid trio run
async def test_regeneration_batch_survives_bad_targets(anyio_backend, session_factory):
    settings = Settings()
    values = [5, 7, 3, 2, 4, 6, 8, 7, 6, 8, 10, 12]
    imports = {
        "hiv": [ImportedAggregateRecord(period=date(2020, m, 1), count=v) for m, v in zip(range(1, 13), values)],
        "tb": [ImportedAggregateRecord(period=date(2020, 1, 1), count=3)],
    }
    orch = ForecastOrchestrator(
        events=InMemoryEventSource(),
        imports=InMemoryImportSource(imports),
        cache=PredictionCache(session_factory, settings),
        engine=SeasonalTrendEngine(settings),
        settings=settings,
    )

    summary = await regenerate_forecasts(orch, ["hiv:*:monthly", "tb:*:monthly", "not-a-target"])

    outcomes = {r["target"]: r["outcome"] for r in summary["results"]}
    assert outcomes == {
        "hiv:*:monthly": "ok",
        "tb:*:monthly": "insufficient_history",
        "not-a-target": "invalid_target",
    }
    assert orch.cache.lookup("hiv", None, "monthly") is not None
