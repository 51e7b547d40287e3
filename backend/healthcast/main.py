# healthcast/main.py
from __future__ import annotations

import structlog
from fastapi import FastAPI

from healthcast.config import get_settings
from healthcast.db.session import init_db
from healthcast.observability.logging import configure_logging
from healthcast.observability.metrics import router as observability_router
from healthcast.observability.middleware import register_request_middleware, unhandled_exception_handler
from healthcast.routers.forecast import router as forecast_router
from healthcast.routers.health import router as health_router
from healthcast.routers.history import router as history_router
from healthcast.schemas.common import API_VERSION
from healthcast.scheduler.setup import init_scheduler, shutdown_scheduler

configure_logging(get_settings().LOG_LEVEL)
logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title="Healthcast", version=API_VERSION)

    register_request_middleware(app)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Ensure tables exist so brand-new dev databases don't 500
    @app.on_event("startup")
    def _ensure_tables() -> None:
        init_db()
        logger.info("app.tables_ready")

    @app.on_event("startup")
    async def _start_scheduler() -> None:
        await init_scheduler(app)

    @app.on_event("shutdown")
    async def _stop_scheduler() -> None:
        await shutdown_scheduler()

    # Authentication is enforced upstream of this service.
    app.include_router(health_router)
    app.include_router(observability_router)
    app.include_router(forecast_router)
    app.include_router(history_router)

    return app


app = create_app()
