"""Sync API routes: run, cancel and inspect source syncs, and list email conflicts."""

from typing import Dict
from typing import List

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from fastapi import Request
from fastapi import status
from loguru import logger

from identity_sync.dependencies import get_engine
from identity_sync.engine import IdentitySyncEngine
from identity_sync.enums import Source
from identity_sync.enums import SyncMode
from identity_sync.models.sync import ConnectionReport
from identity_sync.models.sync import EmailConflict
from identity_sync.models.sync import SourceStatus
from identity_sync.models.sync import SyncAllSummary
from identity_sync.models.sync import SyncJob
from identity_sync.models.sync import SyncOutcome

ROUTER_SYNC = APIRouter(tags=["Sync"])


# =============================================================================
# STATUS ENDPOINTS
# =============================================================================


@ROUTER_SYNC.get(
    "/sync/status",
    response_model=List[SourceStatus],
    responses={
        status.HTTP_200_OK: {
            "description": "Per-source sync state, record count and configuration",
            "content": {
                "application/json": {
                    "example": [
                        {
                            "source": "ldap",
                            "state": "idle",
                            "last_sync": "2026-01-05T06:15:03.120000Z",
                            "user_count": 1824,
                            "is_configured": True,
                            "sync_supported": True,
                            "running_job": None,
                        }
                    ]
                }
            },
        }
    },
)
async def get_sync_status(engine: IdentitySyncEngine = Depends(get_engine)) -> List[SourceStatus]:
    """Status of every source, pushed sources included."""
    return await engine.orchestrator.get_all_source_status()


@ROUTER_SYNC.get("/sync/running", response_model=List[SyncJob])
async def get_running_syncs(engine: IdentitySyncEngine = Depends(get_engine)) -> List[SyncJob]:
    return engine.orchestrator.get_running_jobs()


@ROUTER_SYNC.get(
    "/sync/connections",
    response_model=Dict[Source, ConnectionReport],
    responses={
        status.HTTP_200_OK: {
            "description": "Connectivity check per pulled source; never fails as a whole",
            "content": {
                "application/json": {
                    "example": {
                        "directory": {"success": False, "details": {"error": "NotConfigured"}},
                        "ldap": {"success": True, "details": {"base_dn_found": True}},
                    }
                }
            },
        }
    },
)
async def test_connections(request: Request, engine: IdentitySyncEngine = Depends(get_engine)):
    logger.info("Testing source connections", method=request.method, path=request.url.path)
    return await engine.orchestrator.test_all_connections()


# =============================================================================
# RUN / CANCEL ENDPOINTS
# =============================================================================


@ROUTER_SYNC.post(
    "/sync",
    response_model=SyncAllSummary,
    responses={
        status.HTTP_200_OK: {
            "description": "Every configured source synced concurrently; each run is recorded in history",
            "content": {
                "application/json": {
                    "example": {"total": 2, "completed": 1, "failed": 0, "conflicts": 1, "outcomes": {}}
                }
            },
        }
    },
)
async def sync_all_sources(
    request: Request,
    triggered_by: str = Query("api", description="Who requested the sync (recorded on the jobs and in history)"),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> SyncAllSummary:
    logger.info("Sync of all sources requested", method=request.method, path=request.url.path, triggered_by=triggered_by)
    return await engine.scheduler.trigger_manual_sync_all(triggered_by=triggered_by)


@ROUTER_SYNC.post(
    "/sync/{source}",
    response_model=SyncOutcome,
    responses={
        status.HTTP_200_OK: {
            "description": "Sync ran; ``success`` is false when the job failed after it started",
        },
        status.HTTP_400_BAD_REQUEST: {"description": "Source is not configured or cannot be synced"},
        status.HTTP_409_CONFLICT: {"description": "A sync for the source is already running"},
    },
)
async def sync_source(
    source: Source,
    request: Request,
    mode: SyncMode = Query(SyncMode.FULL, description="'incremental' only fetches changed entries where supported"),
    triggered_by: str = Query("api", description="Who requested the sync (recorded on the job and in history)"),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> SyncOutcome:
    """
    Run one sync now and record it in the sync history.

    Rejected requests map to an error status; a job that started and then failed is
    returned with ``success: false`` and its error code.
    """
    logger.info(
        "Manual sync requested",
        method=request.method,
        path=request.url.path,
        source=source.value,
        mode=mode.value,
        triggered_by=triggered_by,
    )
    outcome = await engine.scheduler.trigger_manual_sync(source, triggered_by=triggered_by, mode=mode)
    return outcome.raise_for_error()


@ROUTER_SYNC.delete(
    "/sync/{source}",
    response_model=SyncJob,
    responses={
        status.HTTP_200_OK: {"description": "The cancelled job"},
        status.HTTP_404_NOT_FOUND: {"description": "No sync running for the source"},
    },
)
async def cancel_sync(source: Source, request: Request, engine: IdentitySyncEngine = Depends(get_engine)) -> SyncJob:
    logger.info("Sync cancellation requested", method=request.method, path=request.url.path, source=source.value)
    return await engine.orchestrator.cancel_sync(source)


# =============================================================================
# CONFLICTS
# =============================================================================


@ROUTER_SYNC.get(
    "/conflicts",
    response_model=List[EmailConflict],
    responses={
        status.HTTP_200_OK: {
            "description": "Emails present in more than one source",
            "content": {
                "application/json": {
                    "example": [
                        {
                            "email": "jane.doe@example.com",
                            "sources": ["directory", "ldap"],
                            "users": [
                                {"id": "directory_4f1c", "source": "directory", "display_name": "Jane Doe"},
                                {"id": "ldap_91ab20", "source": "ldap", "display_name": "Doe, Jane"},
                            ],
                        }
                    ]
                }
            },
        }
    },
)
async def get_conflicts(engine: IdentitySyncEngine = Depends(get_engine)) -> List[EmailConflict]:
    return await engine.orchestrator.detect_email_conflicts()
