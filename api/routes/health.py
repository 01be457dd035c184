"""Health check endpoints."""

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text

from api.deps import get_services
from services.container import ServiceContainer

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy", "degraded"]
    database: Literal["connected", "disconnected"]
    library: Literal["accessible", "inaccessible"]
    downloader: Literal["available", "missing"]
    active_jobs: int
    version: str
    environment: str


class LivenessResponse(BaseModel):
    """Kubernetes liveness probe response."""

    status: Literal["ok"]


@router.get("/health", response_model=HealthStatus)
async def health_check(services: ServiceContainer = Depends(get_services)) -> HealthStatus:
    """Full health check endpoint."""
    settings = services.settings

    # Check database
    db_status: Literal["connected", "disconnected"] = "disconnected"
    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        pass

    # Check filesystem
    library_status: Literal["accessible", "inaccessible"] = (
        "accessible" if settings.library_dir.is_dir() else "inaccessible"
    )

    # Check download tool
    downloader_status: Literal["available", "missing"] = (
        "available" if services.runner.is_available() else "missing"
    )

    # Determine overall status
    overall: Literal["healthy", "unhealthy", "degraded"]
    if db_status == "connected" and library_status == "accessible" and downloader_status == "available":
        overall = "healthy"
    elif db_status == "connected":
        overall = "degraded"
    else:
        overall = "unhealthy"

    return HealthStatus(
        status=overall,
        database=db_status,
        library=library_status,
        downloader=downloader_status,
        active_jobs=len(services.engine.registry),
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get("/health/live", response_model=LivenessResponse)
async def liveness_probe() -> LivenessResponse:
    """Kubernetes liveness probe - checks if app is running."""
    return LivenessResponse(status="ok")
