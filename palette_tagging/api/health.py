"""Health check and system info routes."""

import redis
from fastapi import APIRouter
from sqlalchemy import text

from palette_tagging.config import APP_VERSION, get_settings
from palette_tagging.db.session import engine
from palette_tagging.schemas.schemas import HealthResponse
from palette_tagging.services.prompts import REFINEMENT_PROMPT_VERSION, TAGGING_PROMPT_VERSION

router = APIRouter(tags=["System"])

settings = get_settings()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check():
    """
    Health check endpoint.

    Returns the status of:
    - Database connection
    - Redis connection (Celery broker)
    """
    redis_status = "ok"
    try:
        r = redis.from_url(settings.redis_url, socket_connect_timeout=1)
        r.ping()
    except redis.RedisError:
        redis_status = "error"

    db_status = "ok"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    overall_status = "healthy"
    if "error" in (redis_status, db_status):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=APP_VERSION,
        database=db_status,
        redis=redis_status,
    )


@router.get(
    "/v1/info",
    summary="Service information",
    description="Active prompt versions and configured providers.",
)
async def service_info():
    """Get service information."""
    return {
        "name": settings.app_name,
        "version": APP_VERSION,
        "environment": settings.app_env,
        "tagging_prompt_version": TAGGING_PROMPT_VERSION,
        "refinement_prompt_version": REFINEMENT_PROMPT_VERSION,
        "refinement_model": settings.refinement_model,
        "providers": [
            {"name": p.name, "family": p.family, "model": p.model_id} for p in settings.tagging_providers
        ],
        "documentation": "/docs",
        "redoc": "/redoc",
    }
