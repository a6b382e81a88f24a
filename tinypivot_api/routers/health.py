"""
Health Check Router

Provides endpoints for monitoring application health.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy import text

from tinypivot_api import __version__
from tinypivot_api.config import get_settings
from tinypivot_api.core.database import DbSession

router = APIRouter(prefix="/health", tags=["health"])


class HealthCheck(BaseModel):
    """Health check response model."""
    status: str
    timestamp: datetime
    version: str = __version__
    environment: str


class DetailedHealthCheck(BaseModel):
    """Detailed health check with component status."""
    status: str
    timestamp: datetime
    version: str = __version__
    environment: str
    components: dict[str, dict]


@router.get("", response_model=HealthCheck)
async def health_check() -> HealthCheck:
    """
    Basic health check endpoint.

    Returns:
        Basic health status
    """
    settings = get_settings()
    return HealthCheck(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        environment=settings.environment,
    )


@router.get("/detailed", response_model=DetailedHealthCheck)
async def detailed_health_check(request: Request, db: DbSession) -> DetailedHealthCheck:
    """
    Detailed health check with component status.

    Checks:
    - Catalog database connectivity
    - Organization datasources loaded
    - Pooled SSO sessions
    """
    settings = get_settings()
    components: dict[str, dict] = {}

    try:
        await db.execute(text("SELECT 1"))
        components["database"] = {"status": "healthy", "type": "postgresql"}
    except Exception as e:
        components["database"] = {"status": "unhealthy", "error": str(e)}

    org_datasources = getattr(request.app.state, "org_datasources", {})
    components["org_datasources"] = {"status": "healthy", "count": len(org_datasources)}

    pool = getattr(request.app.state, "session_pool", None)
    components["sso_sessions"] = {
        "status": "healthy",
        "count": len(pool) if pool is not None else 0,
    }

    overall = "healthy"
    if any(c.get("status") == "unhealthy" for c in components.values()):
        overall = "unhealthy"

    return DetailedHealthCheck(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        environment=settings.environment,
        components=components,
    )
