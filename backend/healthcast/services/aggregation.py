# healthcast/services/aggregation.py
"""
Series aggregation.

Merges live completion events (+1 each) and imported pre-aggregated rows
(+count each) into one chronological series per granularity. The full series
is what modeling sees; the display window is only a view over it.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional

import pandas as pd
import structlog

from healthcast.schemas.forecast import Granularity, TimePoint

logger = structlog.get_logger(__name__)

_FREQ = {"daily": "D", "monthly": "MS"}


@dataclass(frozen=True)
class EventRecord:
    completed_at: datetime
    location_id: Optional[int] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class ImportedAggregateRecord:
    period: date
    count: int
    location_id: Optional[int] = None


@dataclass(frozen=True)
class DateRange:
    start: Optional[date] = None
    end: Optional[date] = None

    def contains(self, period: date, granularity: Granularity) -> bool:
        if self.start is not None and period < truncate_period(self.start, granularity):
            return False
        if self.end is not None and period > self.end:
            return False
        return True


@dataclass
class AggregatedSeries:
    granularity: Granularity
    full: List[TimePoint] = field(default_factory=list)
    display: List[TimePoint] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(p.value for p in self.full)

    def __len__(self) -> int:
        return len(self.full)


def truncate_period(value: date | datetime, granularity: Granularity) -> date:
    """Truncate a timestamp or date to the start of its day or month (UTC)."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        value = value.date()
    if granularity == "monthly":
        return value.replace(day=1)
    return value


def _matches(location_id: Optional[int], location_filter: Optional[int]) -> bool:
    return location_filter is None or location_id == location_filter


def aggregate(
    events: Iterable[EventRecord],
    imports: Iterable[ImportedAggregateRecord],
    granularity: Granularity,
    date_range: Optional[DateRange] = None,
    location_id: Optional[int] = None,
) -> AggregatedSeries:
    """
    Merge both sources by period using summation.

    Only periods with at least one contributing record are materialized.
    ``location_id`` restricts both sources before merging; None sums every
    location (system-wide). ``date_range`` only shapes ``display``.
    """
    buckets: Dict[date, int] = defaultdict(int)
    n_events = 0
    n_imports = 0

    for ev in events:
        if not _matches(ev.location_id, location_id):
            continue
        buckets[truncate_period(ev.completed_at, granularity)] += 1
        n_events += 1

    for rec in imports:
        if not _matches(rec.location_id, location_id):
            continue
        if rec.count < 0:
            logger.warning("aggregate.negative_import_count", period=str(rec.period), count=rec.count)
            continue
        buckets[truncate_period(rec.period, granularity)] += int(rec.count)
        n_imports += 1

    full = [TimePoint(period=p, value=v) for p, v in sorted(buckets.items())]
    window = date_range or DateRange()
    display = [tp for tp in full if window.contains(tp.period, granularity)]

    logger.info(
        "aggregate.completed",
        granularity=granularity,
        location_id=location_id,
        events=n_events,
        imports=n_imports,
        periods=len(full),
        display_periods=len(display),
    )
    return AggregatedSeries(granularity=granularity, full=full, display=display)


def to_series(points: List[TimePoint], granularity: Granularity) -> pd.Series:
    """Contiguous float series indexed by period; missing periods become 0."""
    if not points:
        return pd.Series(dtype=float)
    idx = pd.DatetimeIndex([pd.Timestamp(p.period) for p in points], name="ds")
    s = pd.Series([float(p.value) for p in points], index=idx, dtype=float)
    # fill any gaps with 0 to keep the decomposition stable
    return s.asfreq(_FREQ[granularity]).fillna(0.0)


def next_periods(last: date, granularity: Granularity, count: int) -> List[date]:
    """The ``count`` periods strictly after ``last``."""
    if count <= 0:
        return []
    freq = _FREQ[granularity]
    start = pd.Timestamp(last) + (pd.offsets.MonthBegin(1) if granularity == "monthly" else pd.Timedelta(days=1))
    return [ts.date() for ts in pd.date_range(start, periods=count, freq=freq)]
