import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taxprep.core.config import settings
from taxprep.core.database import get_db
from taxprep.core.redis import get_redis
from taxprep.services.tax_data import supported_states

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok", "supportedStates": len(supported_states())}


@router.get("/health/ready")
async def readiness(db: AsyncSession = Depends(get_db)):
    """Dependencies the upload-and-process flow needs; 503 when any is down."""
    checks: dict[str, str] = {}
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except SQLAlchemyError as exc:
        logger.warning("Readiness: database unavailable: %s", exc)
        checks["database"] = "unavailable"
    try:
        await get_redis().ping()
        checks["redis"] = "connected"
    except (RedisError, OSError) as exc:
        logger.warning("Readiness: redis unavailable: %s", exc)
        checks["redis"] = "unavailable"
    # Detection falls back to the income tiers without it
    checks["stateClassifier"] = "configured" if settings.state_classifier_api_key else "disabled"

    ready = "unavailable" not in checks.values()
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ok" if ready else "degraded", "checks": checks},
    )
