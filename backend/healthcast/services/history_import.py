# healthcast/services/history_import.py
"""
Historical aggregate import (spreadsheet / JSON rows -> imported_aggregates).

Rows are cleaned tolerantly: bad rows are skipped and reported, never fatal.
Importing never touches the prediction cache; callers regenerate explicitly.
"""
from __future__ import annotations

import csv
import io
import itertools
import math
import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd
import structlog
from sqlalchemy.orm import Session

from healthcast.models.imported_aggregate import ImportedAggregate

logger = structlog.get_logger(__name__)

MAX_WARNINGS = 50


class ImportTooLarge(ValueError):
    """The batch holds more rows than one import accepts."""

    def __init__(self, limit: int):
        super().__init__(f"Import exceeds the maximum of {limit} rows")
        self.limit = limit


_MONTH_RE = re.compile(r"^\s*(\d{4})-(\d{1,2})\s*$")
_DAY_RE = re.compile(r"^\s*(\d{4})-(\d{1,2})-(\d{1,2})\s*$")

_PERIOD_KEYS = {"period", "month", "date"}
_COUNT_KEYS = {"count", "value", "total", "quantity"}
_LOCATION_KEYS = {"location_id", "location", "barangay_id"}
_LABEL_KEYS = {"source_label", "source", "label"}


def iter_csv_bytes(file_bytes: bytes) -> Iterable[Dict[str, Any]]:
    """Yield dictionaries from CSV bytes (UTF-8/BOM tolerant)."""
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    for row in reader:
        # skip completely blank lines
        if not any((str(v or "").strip() for v in row.values())):
            continue
        yield row


def _find_key(d: Dict[str, Any], pool: set[str]) -> Optional[str]:
    for k in d.keys():
        if k and k.strip().lower() in pool:
            return k
    return None


def parse_period(v: Any) -> Optional[date]:
    """``YYYY-MM`` -> first of that month, ``YYYY-MM-DD`` -> that day."""
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    s = str(v or "")
    try:
        m = _DAY_RE.match(s)
        if m:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        m = _MONTH_RE.match(s)
        if m:
            return date(int(m.group(1)), int(m.group(2)), 1)
    except ValueError:
        return None
    return None


def _whole_number(v: Any) -> Optional[int]:
    if v is None or str(v).strip() == "":
        return None
    num = pd.to_numeric(str(v).strip(), errors="coerce")
    if pd.isna(num) or not math.isfinite(float(num)) or float(num) != int(num):
        return None
    return int(num)


def _coerce_location(v: Any) -> Tuple[Optional[int], bool]:
    if v is None or str(v).strip() == "":
        return None, True
    num = _whole_number(v)
    return num, num is not None


def _try_clean_row(row: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Return (clean_row | None, warning | None)."""
    if not isinstance(row, dict):
        return None, "Row is not an object"

    p_key = _find_key(row, _PERIOD_KEYS)
    c_key = _find_key(row, _COUNT_KEYS)
    l_key = _find_key(row, _LOCATION_KEYS)
    s_key = _find_key(row, _LABEL_KEYS)

    period = parse_period(row.get(p_key)) if p_key else None
    if period is None:
        return None, f"Invalid/missing period ({row.get(p_key) if p_key else 'period'}); expected YYYY-MM or YYYY-MM-DD"
    count = _whole_number(row.get(c_key)) if c_key else None
    if count is None:
        return None, f"Invalid/missing count for {period.isoformat()}"
    if count < 0:
        return None, f"Negative count ({count}) for {period.isoformat()}"
    location_id, valid = _coerce_location(row.get(l_key)) if l_key else (None, True)
    if not valid:
        return None, f"Invalid location id ({row.get(l_key)}) for {period.isoformat()}"

    label = str(row.get(s_key) or "").strip() if s_key else ""
    return {
        "period": period,
        "count": count,
        "location_id": location_id,
        "source_label": label or None,
    }, None


def import_rows(
    rows_iter: Iterable[Dict[str, Any]],
    *,
    entity_key: str,
    db: Session,
    source_label: Optional[str] = None,
    max_rows: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Insert every valid row in one transaction; report what was skipped.

    Raises ``ImportTooLarge`` before writing anything when the batch holds
    more than ``max_rows`` rows.
    """
    if max_rows is not None:
        rows = list(itertools.islice(rows_iter, max_rows + 1))
        if len(rows) > max_rows:
            logger.warning("history_import.too_large", entity_key=entity_key, limit=max_rows)
            raise ImportTooLarge(max_rows)
        rows_iter = rows

    warnings: List[str] = []
    clean_rows: List[ImportedAggregate] = []
    skipped = 0

    for raw in rows_iter:
        clean, warn = _try_clean_row(raw)
        if warn:
            skipped += 1
            if len(warnings) < MAX_WARNINGS:
                warnings.append(warn)
            continue
        clean_rows.append(ImportedAggregate(
            entity_key=entity_key,
            period=clean["period"],
            count=clean["count"],
            location_id=clean["location_id"],
            source_label=clean["source_label"] or source_label,
        ))

    if clean_rows:
        try:
            db.add_all(clean_rows)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("history_import.failed", entity_key=entity_key, rows=len(clean_rows))
            raise

    stats = {"inserted": len(clean_rows), "skipped": skipped, "warnings": warnings}
    logger.info("history_import.completed", entity_key=entity_key, inserted=len(clean_rows), skipped=skipped)
    return stats
