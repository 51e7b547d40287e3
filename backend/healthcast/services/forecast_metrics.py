# healthcast/services/forecast_metrics.py
from __future__ import annotations

from typing import Iterable

import numpy as np

from healthcast.schemas.forecast import AccuracyMetrics


def _arrays(a: Iterable[float], p: Iterable[float]) -> tuple[np.ndarray, np.ndarray]:
    a = np.asarray(list(a), dtype=float); p = np.asarray(list(p), dtype=float)
    n = min(len(a), len(p))
    return a[:n], p[:n]


def _mse(a: Iterable[float], p: Iterable[float]) -> float:
    a, p = _arrays(a, p)
    if len(a) == 0:
        return 0.0
    return float(np.mean((a - p) ** 2))


def _mae(a: Iterable[float], p: Iterable[float]) -> float:
    a, p = _arrays(a, p)
    if len(a) == 0:
        return 0.0
    return float(np.mean(np.abs(a - p)))


def _r_squared(a: Iterable[float], p: Iterable[float]) -> float:
    """Coefficient of determination clamped to [0, 1]."""
    a, p = _arrays(a, p)
    if len(a) == 0:
        return 0.0
    ss_res = float(np.sum((a - p) ** 2))
    ss_tot = float(np.sum((a - a.mean()) ** 2))
    if ss_tot == 0.0:
        # a flat actual series is explained perfectly only by a perfect fit
        return 1.0 if ss_res == 0.0 else 0.0
    return float(min(1.0, max(0.0, 1.0 - ss_res / ss_tot)))


def accuracy_metrics(actual: Iterable[float], predicted: Iterable[float]) -> AccuracyMetrics:
    a = list(actual); p = list(predicted)
    mse = _mse(a, p)
    return AccuracyMetrics(
        mse=round(mse, 4),
        rmse=round(float(np.sqrt(mse)), 4),
        mae=round(_mae(a, p), 4),
        r_squared=round(_r_squared(a, p), 4),
    )


def sanitize_metrics(mse=None, mae=None, r_squared=None) -> AccuracyMetrics:
    """Coerce externally reported metrics into the valid ranges."""

    def _num(v) -> float:
        try:
            f = float(v)
        except (TypeError, ValueError):
            return 0.0
        return f if np.isfinite(f) else 0.0

    m = max(0.0, _num(mse))
    return AccuracyMetrics(
        mse=round(m, 4),
        rmse=round(float(np.sqrt(m)), 4),
        mae=round(max(0.0, _num(mae)), 4),
        r_squared=round(min(1.0, max(0.0, _num(r_squared))), 4),
    )
