# healthcast/services/forecast.py
"""
Forecast engines.

``ForecastEngine`` owns the post-conditions every engine must satisfy: the
horizon is always filled, values are non-negative integers and every point
holds ``0 <= lower_bound <= predicted_value <= upper_bound``. Values are
kept within ``MAX_GROWTH_FACTOR`` times the historical maximum, and raw output
past ``REJECT_GROWTH_FACTOR`` times it is refused. Subclasses only produce raw
(possibly short, possibly malformed) values via ``_predict``.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import structlog
from statsmodels.tsa.seasonal import seasonal_decompose

from healthcast.config import Settings, get_settings
from healthcast.errors import ForecastEngineError, InsufficientHistory, InvariantViolation
from healthcast.schemas.forecast import (
    AccuracyMetrics,
    DataQuality,
    ForecastPoint,
    ForecastRun,
    Granularity,
    TimePoint,
    Trend,
)
from healthcast.services.aggregation import next_periods, to_series
from healthcast.services.forecast_metrics import accuracy_metrics

logger = structlog.get_logger(__name__)

SEASON_LENGTH = {"daily": 7, "monthly": 12}
# recent periods used to fit the linear trend
TREND_WINDOW = {"daily": 56, "monthly": 24}
SIGMA_FLOOR = 0.5


@dataclass
class RawForecast:
    predicted: List[float]
    lower: List[float] = field(default_factory=list)
    upper: List[float] = field(default_factory=list)
    confidence: List[float] = field(default_factory=list)
    accuracy: Optional[AccuracyMetrics] = None
    trend: Optional[Trend] = None
    seasonality_detected: bool = False
    model_version: Optional[str] = None


def classify_trend(first: float, last: float, threshold: float) -> Trend:
    rel = (last - first) / max(abs(first), 1.0)
    if rel > threshold:
        return "increasing"
    if rel < -threshold:
        return "decreasing"
    return "stable"


def _finite(v, default: float) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return default
    return f if math.isfinite(f) else default


def repair_bounds(predicted: int, lower: int, upper: int, min_ratio: float) -> tuple[int, int, int]:
    """
    Clamp a point into ``0 <= lower <= predicted <= upper`` and widen the band
    symmetrically to at least ``min_ratio * predicted`` on each side.
    """
    predicted = max(0, predicted)
    lower = max(0, min(lower, predicted))
    upper = max(upper, predicted)
    margin = int(math.ceil(round(min_ratio * predicted, 9)))
    if predicted - lower < margin:
        lower = max(0, predicted - margin)
    if upper - predicted < margin:
        upper = predicted + margin
    return predicted, lower, upper


class ForecastEngine(ABC):
    name = "base"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def min_points(self, granularity: Granularity) -> int:
        return self.settings.engine_min_points(granularity)

    @abstractmethod
    def _predict(self, y: pd.Series, periods_ahead: int, granularity: Granularity) -> RawForecast:
        """Produce raw values for the horizon from a contiguous series."""

    def forecast(
        self,
        series: Sequence[TimePoint],
        periods_ahead: int,
        granularity: Granularity,
        *,
        data_quality: DataQuality = "moderate",
        entity_key: str = "",
        location_key: Optional[int] = None,
    ) -> ForecastRun:
        if periods_ahead < 1:
            raise ValueError("periods_ahead must be >= 1")
        if granularity not in SEASON_LENGTH:
            raise ValueError(f"unsupported granularity: {granularity!r}")

        y = to_series(list(series), granularity)
        required = self.min_points(granularity)
        if len(y) < required:
            raise InsufficientHistory(len(y), required, granularity)

        raw = self._predict(y, periods_ahead, granularity)
        last_observed = float(y.iloc[-1])
        points = self._finalize(
            raw, periods_ahead, granularity, y.index[-1].date(), last_observed, history_max=float(y.max())
        )

        trend = raw.trend or classify_trend(
            points[0].predicted_value, points[-1].predicted_value, self.settings.TREND_THRESHOLD
        )
        accuracy = raw.accuracy or AccuracyMetrics(mse=0.0, rmse=0.0, mae=0.0, r_squared=0.0)

        logger.info(
            "forecast.generated",
            engine=self.name,
            entity_key=entity_key,
            granularity=granularity,
            history_points=len(y),
            periods_ahead=periods_ahead,
            trend=trend,
            seasonality_detected=raw.seasonality_detected,
        )
        return ForecastRun(
            entity_key=entity_key,
            location_key=location_key,
            granularity=granularity,
            generated_at=datetime.now(timezone.utc),
            points=points,
            accuracy=accuracy,
            trend=trend,
            seasonality_detected=raw.seasonality_detected,
            data_quality=data_quality,
            engine=self.name,
            model_version=raw.model_version,
        )

    # ---------- post-conditions ----------

    def _finalize(
        self,
        raw: RawForecast,
        periods_ahead: int,
        granularity: Granularity,
        last_period,
        last_observed: float,
        history_max: float = 0.0,
    ) -> List[ForecastPoint]:
        s = self.settings
        pred = [max(0.0, _finite(v, 0.0)) for v in raw.predicted[:periods_ahead]]
        lower = [_finite(raw.lower[i], pred[i]) if i < len(raw.lower) else pred[i] for i in range(len(pred))]
        upper = [_finite(raw.upper[i], pred[i]) if i < len(raw.upper) else pred[i] for i in range(len(pred))]
        conf = [
            _finite(raw.confidence[i], 0.95) if i < len(raw.confidence) else 0.95 for i in range(len(pred))
        ]

        # an all-zero history still allows a handful of events per period
        scale = max(history_max, 1.0)
        if pred and max(pred) > s.REJECT_GROWTH_FACTOR * scale:
            raise ForecastEngineError(
                "forecast values explode past the historical maximum",
                {"max_predicted": max(pred), "history_max": history_max, "factor": s.REJECT_GROWTH_FACTOR},
            )

        computed = len(pred)
        if computed < periods_ahead:
            pred, lower, upper = self.pad_horizon(pred, lower, upper, periods_ahead, last_observed)
            conf += [s.PADDED_CONFIDENCE] * (periods_ahead - computed)
            logger.warning(
                "forecast.horizon_padded",
                engine=self.name,
                computed=computed,
                padded=periods_ahead - computed,
            )

        cap = s.MAX_GROWTH_FACTOR * scale
        capped = sum(1 for v in pred if v > cap)
        if capped:
            logger.warning("forecast.values_capped", engine=self.name, capped=capped, cap=cap)
        pred = [min(v, cap) for v in pred]
        lower = [min(v, cap) for v in lower]
        upper = [min(v, cap) for v in upper]

        periods = next_periods(last_period, granularity, periods_ahead)
        points: List[ForecastPoint] = []
        repaired = 0
        for i in range(periods_ahead):
            p0 = int(round(max(_finite(pred[i], 0.0), 0.0)))
            l0 = int(math.floor(max(_finite(lower[i], 0.0), 0.0)))
            u0 = int(math.ceil(_finite(upper[i], 0.0)))
            p, lo, up = repair_bounds(p0, l0, u0, s.MIN_BAND_RATIO)
            if (p, lo, up) != (p0, l0, u0):
                repaired += 1
            if not (0 <= lo <= p <= up):
                raise InvariantViolation(
                    f"bound repair failed at position {i}",
                    {"predicted": p, "lower": lo, "upper": up},
                )
            points.append(
                ForecastPoint(
                    period=periods[i],
                    predicted_value=p,
                    lower_bound=lo,
                    upper_bound=up,
                    confidence_level=conf[i],
                )
            )
        if repaired:
            logger.info("forecast.bounds_repaired", engine=self.name, repaired=repaired, total=periods_ahead)
        return points

    @staticmethod
    def pad_horizon(
        pred: List[float],
        lower: List[float],
        upper: List[float],
        periods_ahead: int,
        last_observed: float,
    ) -> tuple[List[float], List[float], List[float]]:
        """Extend each column linearly from its last two computed values."""
        if not pred:
            pred, lower, upper = [last_observed], [last_observed], [last_observed]
            missing = periods_ahead - 1
        else:
            missing = periods_ahead - len(pred)

        def _extend(col: List[float]) -> List[float]:
            step = col[-1] - col[-2] if len(col) >= 2 else 0.0
            return col + [col[-1] + step * k for k in range(1, missing + 1)]

        return _extend(pred), _extend(lower), _extend(upper)


@dataclass
class _Fit:
    intercept: float
    slope: float
    period: int
    seasonal: Optional[np.ndarray]
    strength: float
    sigma: float

    def trend_at(self, t) -> np.ndarray:
        return self.intercept + self.slope * np.asarray(t, dtype=float)

    def season_at(self, t) -> np.ndarray:
        t = np.asarray(t, dtype=int)
        if self.seasonal is None:
            return np.zeros(len(t))
        return self.seasonal[t % self.period]

    def predict(self, t) -> np.ndarray:
        return self.trend_at(t) + self.season_at(t)


class SeasonalTrendEngine(ForecastEngine):
    """
    Additive seasonal decomposition plus a linear trend on the recent window.

    Seasonality is only modeled with at least two full cycles of history and
    only kept when it explains a meaningful share of the variance.
    """

    name = "seasonal"
    model_version = "seasonal-trend-0.1"

    def _fit(self, values: np.ndarray, granularity: Granularity) -> _Fit:
        n = len(values)
        period = SEASON_LENGTH[granularity]
        seasonal = None
        strength = 0.0

        if n >= 2 * period:
            dec = seasonal_decompose(values, model="additive", period=period, extrapolate_trend="freq")
            component = np.asarray(dec.seasonal, dtype=float)
            total_var = float(np.var(values))
            strength = float(np.var(component)) / total_var if total_var > 0 else 0.0
            if strength > self.settings.SEASONAL_STRENGTH_THRESHOLD:
                # seasonal_decompose repeats one cycle aligned to index 0
                seasonal = component[:period]

        t = np.arange(n)
        deseason = values - (seasonal[t % period] if seasonal is not None else 0.0)
        window = min(n, TREND_WINDOW[granularity])
        tw = t[-window:]
        if window >= 2:
            slope, intercept = np.polyfit(tw, deseason[-window:], 1)
        else:
            slope, intercept = 0.0, float(deseason[-1]) if n else 0.0

        fit = _Fit(float(intercept), float(slope), period, seasonal, strength, 0.0)
        resid = values[-window:] - fit.predict(tw)
        fit.sigma = float(np.std(resid, ddof=1)) if len(resid) > 2 else 0.0
        return fit

    def _backtest(self, values: np.ndarray, granularity: Granularity) -> AccuracyMetrics:
        n = len(values)
        if n >= 10:
            k = max(1, n // 5)
            fit = self._fit(values[:-k], granularity)
            predicted = np.clip(fit.predict(np.arange(n - k, n)), 0.0, None)
            return accuracy_metrics(values[-k:], predicted)
        fit = self._fit(values, granularity)
        return accuracy_metrics(values, np.clip(fit.predict(np.arange(n)), 0.0, None))

    def _predict(self, y: pd.Series, periods_ahead: int, granularity: Granularity) -> RawForecast:
        values = y.to_numpy(dtype=float)
        n = len(values)
        fit = self._fit(values, granularity)

        future = np.arange(n, n + periods_ahead)
        pred = fit.predict(future)
        steps = np.arange(1, periods_ahead + 1)
        half_width = self.settings.CONFIDENCE_Z * max(fit.sigma, SIGMA_FLOOR) * np.sqrt(steps)

        trend_values = fit.trend_at(future)
        first = float(trend_values[0]) if periods_ahead > 1 else float(fit.trend_at([n - 1])[0])
        trend = classify_trend(first, float(trend_values[-1]), self.settings.TREND_THRESHOLD)

        return RawForecast(
            predicted=pred.tolist(),
            lower=(pred - half_width).tolist(),
            upper=(pred + half_width).tolist(),
            confidence=[0.95] * periods_ahead,
            accuracy=self._backtest(values, granularity),
            trend=trend,
            seasonality_detected=fit.seasonal is not None,
            model_version=self.model_version,
        )


def get_forecast_engine(settings: Optional[Settings] = None, client=None) -> ForecastEngine:
    """Engine selected by ``FORECAST_ENGINE``."""
    settings = settings or get_settings()
    if settings.FORECAST_ENGINE == "llm":
        from healthcast.services.forecast_llm import GenerativeForecastEngine

        return GenerativeForecastEngine(settings, client=client)
    return SeasonalTrendEngine(settings)
