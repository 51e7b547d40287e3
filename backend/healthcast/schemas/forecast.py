from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Granularity = Literal["daily", "monthly"]
DataQuality = Literal["insufficient", "moderate", "high"]
Trend = Literal["increasing", "decreasing", "stable"]

# Orchestrator outcomes reported to callers alongside the points.
ForecastStatus = Literal[
    "ok",
    "cached",
    "insufficient_data",
    "insufficient_history",
    "forecast_unavailable",
]


class TimePoint(BaseModel):
    period: date
    value: int = Field(ge=0)


class ForecastPoint(BaseModel):
    period: date
    predicted_value: int
    lower_bound: int
    upper_bound: int
    confidence_level: float = 0.95


class AccuracyMetrics(BaseModel):
    mse: float = Field(ge=0.0)
    rmse: float = Field(ge=0.0)
    mae: float = Field(ge=0.0)
    r_squared: float = Field(ge=0.0, le=1.0)


class ForecastRun(BaseModel):
    entity_key: str
    location_key: Optional[int] = None
    granularity: Granularity
    generated_at: datetime
    points: List[ForecastPoint]
    accuracy: AccuracyMetrics
    trend: Trend
    seasonality_detected: bool
    data_quality: DataQuality
    engine: str
    model_version: Optional[str] = None
    # cache row version; None for ephemeral (never persisted) runs
    version: Optional[int] = None


class QualityThresholds(BaseModel):
    """Cutoffs behind the data_quality label, echoed so clients can explain it."""

    granularity: Granularity
    moderate_min_points: int
    high_min_points: int
    engine_min_points: int


class ForecastResponse(BaseModel):
    entity_key: str
    location_key: Optional[int] = None
    granularity: Granularity
    historical_points: List[TimePoint]
    forecast_points: List[ForecastPoint]
    data_quality: DataQuality
    used_cache: bool
    stale: bool = False
    status: ForecastStatus
    accuracy: Optional[AccuracyMetrics] = None
    trend: Optional[Trend] = None
    seasonality_detected: Optional[bool] = None
    generated_at: Optional[datetime] = None
    history_points_count: int
    quality_thresholds: QualityThresholds


class RegenerateIn(BaseModel):
    entity_key: str = Field(..., min_length=1, max_length=64)
    location_id: Optional[int] = None
    granularity: Granularity = "monthly"
    periods_ahead: int = Field(12, ge=1, le=366)
