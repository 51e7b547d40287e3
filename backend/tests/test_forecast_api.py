from datetime import date

from fastapi.testclient import TestClient

from healthcast.config import Settings
from healthcast.errors import SourceUnavailable
from healthcast.main import app
from healthcast.routers.forecast import get_orchestrator
from healthcast.services.forecast import SeasonalTrendEngine
from healthcast.services.orchestrator import ForecastOrchestrator
from healthcast.services.prediction_cache import PredictionCache, cache_key
from healthcast.services.sources import EventSource, InMemoryImportSource

from _helpers import unwrap

LOW_VOLUME_2020 = [5, 7, 3, 2, 4, 6, 8, 7, 6, 8, 10, 12]


def test_forecast_cache_miss(client: TestClient, seed_monthly):
    seed_monthly("hiv", LOW_VOLUME_2020)
    r = client.get("/api/forecast", params={"entity_key": "hiv", "granularity": "monthly", "periods_ahead": 3})
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    data = unwrap(body)
    assert data["status"] == "ok"
    assert data["used_cache"] is False
    assert len(data["forecast_points"]) == 3
    assert data["forecast_points"][0]["period"] == "2021-01-01"
    assert data["quality_thresholds"]["moderate_min_points"] == 7
    assert body["meta"]["entity_key"] == "hiv"

    # ad hoc forecasts are never persisted
    cached = client.get("/api/forecast/cached", params={"entity_key": "hiv"})
    assert cached.status_code == 404
    assert cached.json()["error"]["code"] == "NOT_CACHED"


def test_forecast_insufficient_history_only(client: TestClient, seed_monthly):
    seed_monthly("measles", [1, 2, 3])
    data = unwrap(client.get("/api/forecast", params={"entity_key": "measles"}).json())
    assert data["status"] == "insufficient_data"
    assert data["forecast_points"] == []
    assert len(data["historical_points"]) == 3


def test_regenerate_then_forecast_uses_cache(client: TestClient, seed_monthly):
    seed_monthly("hiv", LOW_VOLUME_2020)
    r = client.post("/api/forecast/regenerate", json={"entity_key": "hiv", "granularity": "monthly", "periods_ahead": 6})
    assert r.status_code == 200
    run = unwrap(r.json())
    assert run["version"] == 1
    assert len(run["points"]) == 6

    data = unwrap(client.get("/api/forecast", params={"entity_key": "hiv", "periods_ahead": 3}).json())
    assert data["used_cache"] is True
    assert data["status"] == "cached"
    assert len(data["forecast_points"]) == 3

    cached = client.get("/api/forecast/cached", params={"entity_key": "hiv", "granularity": "monthly"})
    assert cached.status_code == 200
    assert unwrap(cached.json())["stale"] is False


def test_regenerate_with_too_little_history_is_422(client: TestClient, seed_monthly):
    seed_monthly("hiv", [1, 2])
    r = client.post("/api/forecast/regenerate", json={"entity_key": "hiv"})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "INSUFFICIENT_HISTORY"


def test_regenerate_while_key_busy_is_409(client: TestClient, seed_monthly, session_factory):
    seed_monthly("hiv", LOW_VOLUME_2020)
    cache = PredictionCache(session_factory)
    with cache.regeneration_slot(cache_key("hiv", None, "monthly")):
        r = client.post("/api/forecast/regenerate", json={"entity_key": "hiv", "granularity": "monthly"})
    assert r.status_code == 409
    body = r.json()
    assert body["error"]["code"] == "REGENERATION_CONFLICT"
    assert "re-fetch" in body["error"]["message"]


def test_invalid_granularity_is_rejected(client: TestClient):
    r = client.get("/api/forecast", params={"entity_key": "hiv", "granularity": "weekly"})
    assert r.status_code == 422


def test_horizon_and_range_validation(client: TestClient):
    r = client.get("/api/forecast", params={"entity_key": "hiv", "periods_ahead": 500})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "INVALID_HORIZON"

    r = client.get(
        "/api/forecast",
        params={"entity_key": "hiv", "start_date": date(2024, 5, 1).isoformat(), "end_date": "2024-01-01"},
    )
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "INVALID_RANGE"


class _DownEvents(EventSource):
    def fetch(self, entity_key):
        raise SourceUnavailable("events", "database is locked")


def test_source_outage_is_503(client: TestClient, session_factory):
    settings = Settings()
    app.dependency_overrides[get_orchestrator] = lambda: ForecastOrchestrator(
        events=_DownEvents(),
        imports=InMemoryImportSource(),
        cache=PredictionCache(session_factory, settings),
        engine=SeasonalTrendEngine(settings),
        settings=settings,
    )
    r = client.get("/api/forecast", params={"entity_key": "hiv"})
    assert r.status_code == 503
    err = r.json()["error"]
    assert err["code"] == "SOURCE_UNAVAILABLE"
    assert err["details"]["retryable"] is True
