"""Health check endpoints for monitoring application status."""

from datetime import datetime
from datetime import timezone

from fastapi import APIRouter
from fastapi import Depends
from fastapi import status
from fastapi.responses import JSONResponse
from loguru import logger

from identity_sync.dependencies import get_engine
from identity_sync.engine import IdentitySyncEngine

ROUTER_HEALTH = APIRouter(tags=["Health"])

SERVICE_NAME = "Identity Sync API"


@ROUTER_HEALTH.get(
    "/health",
    summary="Health check endpoint",
    description="Basic health check that returns application status and metadata",
    responses={
        status.HTTP_200_OK: {
            "description": "Application is healthy",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "timestamp": "2026-01-05T12:00:00.000000+00:00",
                        "service": "Identity Sync API",
                        "version": "v1",
                        "persistence": "postgresql",
                    }
                }
            },
        }
    },
)
async def health_check(engine: IdentitySyncEngine = Depends(get_engine)):
    """
    Basic health check endpoint.

    Lightweight: reports which persistence backend is in use but does not touch it.
    """
    response_data = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
        "version": "v1",
        "persistence": "postgresql" if engine.pool is not None else "memory",
    }

    logger.debug("Health check requested", status="healthy")

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=response_data,
    )


@ROUTER_HEALTH.get(
    "/health/database",
    summary="Database health check",
    description="Runs a validation query against the identity database and lists its tables",
    responses={
        status.HTTP_200_OK: {"description": "Database reachable (or in-memory persistence)"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Database unreachable"},
    },
)
async def database_health_check(engine: IdentitySyncEngine = Depends(get_engine)):
    """Check the PostgreSQL pool; in-memory persistence is always healthy."""
    timestamp = datetime.now(timezone.utc).isoformat()

    if engine.pool is None:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"healthy": True, "persistence": "memory", "timestamp": timestamp},
        )

    details = await engine.pool.describe()
    if not details.get("healthy"):
        logger.warning("Database health check failed")

    return JSONResponse(
        status_code=status.HTTP_200_OK if details.get("healthy") else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={**details, "persistence": "postgresql", "timestamp": timestamp},
    )
