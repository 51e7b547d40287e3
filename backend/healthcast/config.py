# backend/healthcast/config.py
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # environment: "dev" for running the app locally, "test" for pytest
    ENV: str = "dev"

    DATABASE_URL: str | None = None
    TEST_DATABASE_URL: str | None = None
    LOG_LEVEL: str = "INFO"

    # --- Data quality policy (periods of history) ---
    QUALITY_MODERATE_MIN_POINTS: int = 7
    QUALITY_HIGH_MIN_POINTS_DAILY: int = 30
    QUALITY_HIGH_MIN_POINTS_MONTHLY: int = 14

    # --- Forecast engine ---
    FORECAST_ENGINE: Literal["seasonal", "llm"] = "seasonal"
    # hard minimum (contiguous periods) below which the engine refuses to fit
    ENGINE_MIN_POINTS_DAILY: int = 14
    ENGINE_MIN_POINTS_MONTHLY: int = 12
    SEASONAL_STRENGTH_THRESHOLD: float = 0.15
    CONFIDENCE_Z: float = 1.96
    MIN_BAND_RATIO: float = 0.2
    TREND_THRESHOLD: float = 0.05
    # padded points must stay below any confidence an engine reports itself
    PADDED_CONFIDENCE: float = 0.60
    # multiples of the historical maximum: clamp above MAX, reject raw output above REJECT
    MAX_GROWTH_FACTOR: float = 5.0
    REJECT_GROWTH_FACTOR: float = 10.0
    DEFAULT_PERIODS_AHEAD: int = 12
    MAX_PERIODS_AHEAD: int = 90

    # --- Generative engine (OpenAI-compatible chat API) ---
    LLM_API_KEY: str | None = Field(None, description="API key for the generative forecast engine.")
    LLM_BASE_URL: str | None = None
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TEMPERATURE: float = 0.2
    LLM_TIMEOUT_SECONDS: float = 60.0
    LLM_MIN_CONFIDENCE: float = 0.70
    LLM_MAX_CONFIDENCE: float = 0.95

    # --- Historical import ---
    MAX_IMPORT_ROWS: int = 1000

    # --- Prediction cache ---
    # None keeps cached runs valid until explicitly regenerated.
    CACHE_MAX_AGE_HOURS: Optional[float] = None

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    # IANA timezone name used by APScheduler (e.g., "UTC", "Asia/Manila").
    SCHEDULER_TZ: str = "UTC"
    # Optional dedicated job store URL. If None, the application database is used.
    SCHEDULER_DB_URL: str | None = None
    # "entity_key:location_key:granularity", location "*" (or empty) meaning system-wide
    REGENERATION_TARGETS: List[str] = Field(default_factory=list)
    REGENERATION_HOUR: int = 3
    REGENERATION_PERIODS_AHEAD: int = 12

    @model_validator(mode="after")
    def _check_engine_config(self):
        if not self.PADDED_CONFIDENCE < self.LLM_MIN_CONFIDENCE <= self.LLM_MAX_CONFIDENCE:
            raise ValueError("PADDED_CONFIDENCE must be below LLM_MIN_CONFIDENCE, which must not exceed LLM_MAX_CONFIDENCE.")
        if self.MAX_GROWTH_FACTOR > self.REJECT_GROWTH_FACTOR:
            raise ValueError("MAX_GROWTH_FACTOR must not exceed REJECT_GROWTH_FACTOR.")
        # In dev/test the generative engine may run against an injected client.
        if self.ENV in ("dev", "test"):
            return self
        if self.FORECAST_ENGINE == "llm" and not self.LLM_API_KEY:
            raise ValueError("LLM_API_KEY must be set via environment when FORECAST_ENGINE=llm.")
        return self

    def engine_min_points(self, granularity: str) -> int:
        if granularity == "monthly":
            return self.ENGINE_MIN_POINTS_MONTHLY
        return self.ENGINE_MIN_POINTS_DAILY


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
