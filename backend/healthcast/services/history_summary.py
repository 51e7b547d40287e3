# healthcast/services/history_summary.py
"""Per-source reporting over the records that feed the aggregator."""
from __future__ import annotations

from datetime import date
from typing import Iterable, List, Optional

import structlog

from healthcast.schemas.history import HistorySummary, SourceTotals
from healthcast.services.aggregation import EventRecord, ImportedAggregateRecord, truncate_period

logger = structlog.get_logger(__name__)


def _totals(dates: List[date], total: int) -> SourceTotals:
    return SourceTotals(
        record_count=len(dates),
        total=total,
        earliest=min(dates) if dates else None,
        latest=max(dates) if dates else None,
    )


def summarize_sources(
    entity_key: str,
    events: Iterable[EventRecord],
    imports: Iterable[ImportedAggregateRecord],
    location_id: Optional[int] = None,
) -> HistorySummary:
    """
    Record counts, totals and date spans per source plus combined.

    Applies the same location filter and negative-count rule as ``aggregate``
    so the combined total matches the series that gets forecast.
    """
    event_dates = [
        truncate_period(ev.completed_at, "daily")
        for ev in events
        if location_id is None or ev.location_id == location_id
    ]
    import_dates: List[date] = []
    import_total = 0
    for rec in imports:
        if location_id is not None and rec.location_id != location_id:
            continue
        if rec.count < 0:
            continue
        import_dates.append(rec.period)
        import_total += int(rec.count)

    every = event_dates + import_dates
    summary = HistorySummary(
        entity_key=entity_key,
        location_id=location_id,
        events=_totals(event_dates, len(event_dates)),
        imports=_totals(import_dates, import_total),
        combined=_totals(every, len(event_dates) + import_total),
        available_years=sorted({d.year for d in every}),
    )
    logger.info(
        "history.summarized",
        entity_key=entity_key,
        location_id=location_id,
        events=summary.events.record_count,
        imports=summary.imports.record_count,
        combined_total=summary.combined.total,
    )
    return summary
