from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from healthcast.config import get_settings
from healthcast.errors import (
    CacheWriteConflict,
    ForecastEngineError,
    InsufficientHistory,
    SourceUnavailable,
)
from healthcast.observability.instrument import log_job
from healthcast.services.orchestrator import ForecastOrchestrator, build_orchestrator

logger = structlog.get_logger(__name__)

Target = Tuple[str, Optional[int], str]


def parse_target(raw: str) -> Optional[Target]:
    """
    Parse ``entity_key:location:granularity``; location ``*`` or empty means
    system-wide. Returns None for malformed targets.
    """
    parts = [p.strip() for p in (raw or "").split(":")]
    if len(parts) != 3 or not parts[0] or parts[2] not in ("daily", "monthly"):
        return None
    entity_key, location, granularity = parts
    if location in ("", "*"):
        return entity_key, None, granularity
    if not location.isdigit():
        return None
    return entity_key, int(location), granularity


@log_job("regenerate-forecasts")
async def regenerate_forecasts(
    orchestrator: Optional[ForecastOrchestrator] = None,
    targets: Optional[Iterable[str]] = None,
) -> Dict[str, List[Dict[str, object]]]:
    """
    Nightly regeneration of every configured cache key.

    One failing target never stops the batch: conflicts mean another
    regeneration already refreshed the key, insufficient history means there
    is nothing worth caching yet.
    """
    settings = get_settings()
    orchestrator = orchestrator or build_orchestrator(settings=settings)
    raw_targets = list(targets) if targets is not None else settings.REGENERATION_TARGETS
    results: List[Dict[str, object]] = []

    for raw in raw_targets:
        target = parse_target(raw)
        if target is None:
            logger.warning("regeneration.invalid_target", target=raw)
            results.append({"target": raw, "outcome": "invalid_target"})
            continue
        entity_key, location_key, granularity = target
        try:
            run = await orchestrator.regenerate(
                entity_key, location_key, granularity, settings.REGENERATION_PERIODS_AHEAD
            )
        except CacheWriteConflict:
            logger.info("regeneration.skipped", target=raw, reason="conflict")
            results.append({"target": raw, "outcome": "conflict"})
        except InsufficientHistory as exc:
            logger.info("regeneration.skipped", target=raw, reason="insufficient_history", **exc.details)
            results.append({"target": raw, "outcome": "insufficient_history"})
        except (SourceUnavailable, ForecastEngineError) as exc:
            logger.error("regeneration.failed", target=raw, code=exc.code, error=exc.message)
            results.append({"target": raw, "outcome": "error"})
        else:
            results.append({"target": raw, "outcome": "ok", "version": run.version})

    return {"results": results}
