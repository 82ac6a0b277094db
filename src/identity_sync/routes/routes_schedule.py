"""Schedule API routes for managing cron-triggered source syncs and their history."""

from typing import List

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from fastapi import Request
from fastapi import Response
from fastapi import status
from loguru import logger

from identity_sync.dependencies import get_engine
from identity_sync.engine import IdentitySyncEngine
from identity_sync.models.schedule import HistoryEntry
from identity_sync.models.schedule import Schedule
from identity_sync.models.schedule import ScheduleCreate
from identity_sync.models.schedule import ScheduleUpdate
from identity_sync.models.schedule import SyncStats

ROUTER_SCHEDULE = APIRouter(tags=["Schedule"])

SCHEDULE_EXAMPLE = {
    "id": "0b6f3c1e-8d0a-4d6e-9d55-2f1f0c6f7a10",
    "source": "ldap",
    "enabled": True,
    "cron_expression": "15 6 * * *",
    "description": "Daily LDAP sync",
    "timezone": "Europe/Berlin",
    "retry_on_error": True,
    "retry_attempts": 3,
    "retry_delay_minutes": 15,
    "last_run_at": "2026-01-05T05:15:00Z",
    "next_run_at": "2026-01-06T05:15:00Z",
    "status": "active",
}


# =============================================================================
# HISTORY ENDPOINTS
# =============================================================================


@ROUTER_SCHEDULE.get(
    "/schedules/history",
    response_model=List[HistoryEntry],
    responses={
        status.HTTP_200_OK: {
            "description": "Most recent sync runs first (scheduled, manual and retry)",
        }
    },
)
async def get_sync_history(
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of entries to return"),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> List[HistoryEntry]:
    return await engine.scheduler.get_sync_history(limit=limit)


@ROUTER_SCHEDULE.get("/schedules/stats", response_model=SyncStats)
async def get_sync_stats(engine: IdentitySyncEngine = Depends(get_engine)) -> SyncStats:
    """Run totals, today's runs, recent failures and per-source figures."""
    return await engine.scheduler.get_sync_stats()


# =============================================================================
# SCHEDULE CRUD
# =============================================================================


@ROUTER_SCHEDULE.get(
    "/schedules",
    response_model=List[Schedule],
    responses={
        status.HTTP_200_OK: {
            "description": "All schedules",
            "content": {"application/json": {"example": [SCHEDULE_EXAMPLE]}},
        }
    },
)
async def list_schedules(engine: IdentitySyncEngine = Depends(get_engine)) -> List[Schedule]:
    return await engine.scheduler.list_schedules()


@ROUTER_SCHEDULE.post(
    "/schedules",
    response_model=Schedule,
    status_code=status.HTTP_201_CREATED,
    responses={
        status.HTTP_201_CREATED: {
            "description": "Schedule created; an enabled schedule is registered immediately",
            "content": {"application/json": {"example": SCHEDULE_EXAMPLE}},
        },
        422: {"description": "Invalid cron expression, timezone or source"},
    },
)
async def create_schedule(
    request: Request, data: ScheduleCreate, engine: IdentitySyncEngine = Depends(get_engine)
) -> Schedule:
    logger.info(
        "Creating schedule",
        method=request.method,
        path=request.url.path,
        source=data.source.value,
        cron_expression=data.cron_expression,
    )
    return await engine.scheduler.create_schedule(data)


@ROUTER_SCHEDULE.get(
    "/schedules/{schedule_id}",
    response_model=Schedule,
    responses={status.HTTP_404_NOT_FOUND: {"description": "Schedule not found"}},
)
async def get_schedule(schedule_id: str, engine: IdentitySyncEngine = Depends(get_engine)) -> Schedule:
    return await engine.scheduler.get_schedule(schedule_id)


@ROUTER_SCHEDULE.put(
    "/schedules/{schedule_id}",
    response_model=Schedule,
    responses={
        status.HTTP_200_OK: {"description": "Schedule updated; trigger re-registered when timing changed"},
        status.HTTP_404_NOT_FOUND: {"description": "Schedule not found"},
    },
)
async def update_schedule(
    schedule_id: str, request: Request, data: ScheduleUpdate, engine: IdentitySyncEngine = Depends(get_engine)
) -> Schedule:
    logger.info(
        "Updating schedule",
        method=request.method,
        path=request.url.path,
        schedule_id=schedule_id,
        fields=sorted(data.model_dump(exclude_unset=True)),
    )
    return await engine.scheduler.update_schedule(schedule_id, data)


@ROUTER_SCHEDULE.delete(
    "/schedules/{schedule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"description": "Schedule not found"}},
)
async def delete_schedule(schedule_id: str, request: Request, engine: IdentitySyncEngine = Depends(get_engine)):
    logger.info("Deleting schedule", method=request.method, path=request.url.path, schedule_id=schedule_id)
    await engine.scheduler.delete_schedule(schedule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# START / STOP
# =============================================================================


@ROUTER_SCHEDULE.post("/schedules/{schedule_id}/start", response_model=Schedule)
async def start_schedule(schedule_id: str, engine: IdentitySyncEngine = Depends(get_engine)) -> Schedule:
    """Enable the schedule and register its trigger."""
    return await engine.scheduler.start_schedule(schedule_id)


@ROUTER_SCHEDULE.post("/schedules/{schedule_id}/stop", response_model=Schedule)
async def stop_schedule(schedule_id: str, engine: IdentitySyncEngine = Depends(get_engine)) -> Schedule:
    """Disable the schedule, drop its trigger and any pending retries."""
    return await engine.scheduler.stop_schedule(schedule_id)
