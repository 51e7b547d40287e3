from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HistoryImportIn(BaseModel):
    entity_key: str = Field(..., min_length=1, max_length=64)
    source_label: Optional[str] = Field(None, max_length=128)
    # rows are cleaned tolerantly, so they stay loosely typed here
    records: List[Dict[str, Any]] = Field(default_factory=list)


class HistoryImportResult(BaseModel):
    inserted: int
    skipped: int
    warnings: List[str] = Field(default_factory=list)


class SourceTotals(BaseModel):
    record_count: int
    total: int
    earliest: Optional[date] = None
    latest: Optional[date] = None


class HistorySummary(BaseModel):
    """What each source contributes to an entity's series, and the combined span."""

    entity_key: str
    location_id: Optional[int] = None
    events: SourceTotals
    imports: SourceTotals
    combined: SourceTotals
    available_years: List[int] = Field(default_factory=list)
