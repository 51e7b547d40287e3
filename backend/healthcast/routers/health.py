from fastapi import APIRouter

from healthcast.config import get_settings
from healthcast.schemas.common import meta_now, ok

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
def healthcheck():
    settings = get_settings()
    return ok(
        data={"status": "ok", "forecast_engine": settings.FORECAST_ENGINE},
        meta=meta_now(),
    )
