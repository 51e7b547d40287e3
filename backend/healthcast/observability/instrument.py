from __future__ import annotations

import functools
import inspect
import time
from typing import Any, Callable, TypeVar

import structlog

F = TypeVar("F", bound=Callable[..., Any])

logger = structlog.get_logger("job")


def _result_size(res: Any) -> int | None:
    if isinstance(res, dict):
        # batch summaries report how many targets they touched
        return len(res.get("results", res))
    if hasattr(res, "__len__"):
        return len(res)
    return None


def log_job(name: str) -> Callable[[F], F]:
    """Time a job (sync or async) and emit start/completed/error events."""

    def _completed(start: float, result: Any) -> None:
        logger.info(
            "job.completed",
            job=name,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            result_size=_result_size(result),
        )

    def _failed(start: float) -> None:
        logger.exception("job.error", job=name, duration_ms=round((time.perf_counter() - start) * 1000, 2))

    def decorator(func: F) -> F:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any):
                start = time.perf_counter()
                logger.info("job.start", job=name)
                try:
                    result = await func(*args, **kwargs)
                except Exception:
                    _failed(start)
                    raise
                _completed(start, result)
                return result

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any):
            start = time.perf_counter()
            logger.info("job.start", job=name)
            try:
                result = func(*args, **kwargs)
            except Exception:
                _failed(start)
                raise
            _completed(start, result)
            return result

        return sync_wrapper  # type: ignore[return-value]

    return decorator
