# healthcast/routers/history.py
from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, File, Query, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from healthcast.config import get_settings
from healthcast.db.session import get_db
from healthcast.errors import SourceUnavailable
from healthcast.routers.forecast import get_orchestrator
from healthcast.schemas.common import fail, fail_from, meta_now, ok
from healthcast.schemas.history import HistoryImportIn, HistoryImportResult
from healthcast.services.history_import import ImportTooLarge, import_rows, iter_csv_bytes
from healthcast.services.orchestrator import ForecastOrchestrator

router = APIRouter(prefix="/api/history", tags=["history"])
logger = structlog.get_logger(__name__)

_CSV_TYPES = {"text/csv", "application/csv", "application/vnd.ms-excel"}


def _too_large(exc: ImportTooLarge, meta):
    return fail(
        code="TOO_MANY_ROWS",
        message=str(exc),
        status_code=413,
        details={"max_rows": exc.limit},
        meta=meta,
    )


def _store_failed(meta):
    return fail(
        code="IMPORT_FAILED",
        message="Could not store imported rows; nothing was written.",
        status_code=503,
        details={"retryable": True},
        meta=meta,
    )


@router.post("/import")
def import_history(body: HistoryImportIn, db: Session = Depends(get_db)):
    """Store pre-aggregated historical counts sent as JSON rows."""
    meta = meta_now(entity_key=body.entity_key, rows=len(body.records))
    try:
        stats = import_rows(
            body.records,
            entity_key=body.entity_key,
            db=db,
            source_label=body.source_label,
            max_rows=get_settings().MAX_IMPORT_ROWS,
        )
    except ImportTooLarge as exc:
        return _too_large(exc, meta)
    except SQLAlchemyError:
        return _store_failed(meta)
    return ok(data=HistoryImportResult(**stats).model_dump(), meta=meta)


@router.post("/upload")
async def upload_history(
    entity_key: str = Query(..., min_length=1, max_length=64),
    source_label: Optional[str] = Query(None, max_length=128),
    file: UploadFile = File(..., description="CSV with period,count[,location_id,source_label]"),
    db: Session = Depends(get_db),
):
    """Spreadsheet import. Only CSV is accepted."""
    meta = meta_now(entity_key=entity_key, filename=file.filename)
    content_type = (file.content_type or "").lower()
    if content_type not in _CSV_TYPES:
        return fail(
            code="UNSUPPORTED_MEDIA_TYPE",
            message=f"Upload expects CSV; got {content_type or 'unknown'}.",
            status_code=415,
            meta=meta,
        )

    raw_bytes = await file.read()
    if not raw_bytes or not raw_bytes.strip():
        return fail(code="EMPTY_FILE", message="CSV file is empty.", status_code=400, meta=meta)

    try:
        stats = import_rows(
            iter_csv_bytes(raw_bytes),
            entity_key=entity_key,
            db=db,
            source_label=source_label or file.filename,
            max_rows=get_settings().MAX_IMPORT_ROWS,
        )
    except ImportTooLarge as exc:
        return _too_large(exc, meta)
    except SQLAlchemyError:
        return _store_failed(meta)
    return ok(data=HistoryImportResult(**stats).model_dump(), meta=meta)


@router.get("/summary")
async def history_summary(
    entity_key: str = Query(..., min_length=1, max_length=64),
    location_id: Optional[int] = Query(None, description="Omit for every location"),
    orchestrator: ForecastOrchestrator = Depends(get_orchestrator),
):
    """Records, totals and date spans per source (live events vs imports) and combined."""
    meta = meta_now(entity_key=entity_key, location_id=location_id)
    try:
        summary = await orchestrator.summarize(entity_key, location_id)
    except SourceUnavailable as exc:
        return fail_from(exc, 503, meta)
    return ok(data=summary.model_dump(), meta=meta)
