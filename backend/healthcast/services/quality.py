# healthcast/services/quality.py
from __future__ import annotations

from typing import Optional, Sequence

import structlog

from healthcast.config import Settings, get_settings
from healthcast.schemas.forecast import DataQuality, Granularity, QualityThresholds, TimePoint

logger = structlog.get_logger(__name__)


class QualityClassifier:
    """
    Labels a series by how many periods of history it holds.

    Counts materialized periods (those with at least one record), so a sparse
    series spread over many months does not earn a better label than its data
    supports. Cutoffs come from settings and are monotonic in point count.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def thresholds(self, granularity: Granularity) -> QualityThresholds:
        s = self.settings
        high = s.QUALITY_HIGH_MIN_POINTS_MONTHLY if granularity == "monthly" else s.QUALITY_HIGH_MIN_POINTS_DAILY
        return QualityThresholds(
            granularity=granularity,
            moderate_min_points=s.QUALITY_MODERATE_MIN_POINTS,
            high_min_points=max(high, s.QUALITY_MODERATE_MIN_POINTS),
            engine_min_points=s.engine_min_points(granularity),
        )

    def classify_count(self, n_points: int, granularity: Granularity) -> DataQuality:
        t = self.thresholds(granularity)
        if n_points < t.moderate_min_points:
            return "insufficient"
        if n_points < t.high_min_points:
            return "moderate"
        return "high"

    def classify(self, series: Sequence[TimePoint], granularity: Granularity) -> DataQuality:
        n = len(series)
        label = self.classify_count(n, granularity)
        logger.info("quality.classified", granularity=granularity, points=n, data_quality=label)
        return label

