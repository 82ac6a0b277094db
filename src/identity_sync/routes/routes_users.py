"""User API routes: the unified view across sources, uploads and manual records."""

from typing import List
from typing import Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Query
from fastapi import Request
from fastapi import Response
from fastapi import status
from loguru import logger

from identity_sync.dependencies import get_engine
from identity_sync.engine import IdentitySyncEngine
from identity_sync.enums import SortOrder
from identity_sync.enums import Source
from identity_sync.models.identity import IdentityRecord
from identity_sync.models.ingest import IngestResult
from identity_sync.models.ingest import ManualRecordCreate
from identity_sync.models.ingest import ManualRecordUpdate
from identity_sync.models.ingest import UploadAnalysis
from identity_sync.models.ingest import UploadRequest
from identity_sync.models.unified import DashboardStats
from identity_sync.models.unified import Page
from identity_sync.models.unified import UnifiedUser
from identity_sync.models.unified import UserQuery

ROUTER_USERS = APIRouter(tags=["Users"])

ACTOR_DESCRIPTION = "Who performed the change (stored on the record)"


# =============================================================================
# UNIFIED VIEW
# =============================================================================


@ROUTER_USERS.get(
    "/users",
    response_model=Page[UnifiedUser],
    responses={
        status.HTTP_200_OK: {
            "description": "Filtered, sorted and paginated users across sources",
            "content": {
                "application/json": {
                    "example": {
                        "items": [
                            {
                                "id": "ldap_91ab20c4d7e8f0a1b2c3",
                                "email": "jane.doe@example.com",
                                "first_name": "Jane",
                                "last_name": "Doe",
                                "display_name": "Doe, Jane",
                                "is_active": True,
                                "source": "ldap",
                                "external_id": "CN=Jane Doe,OU=Staff,DC=example,DC=com",
                                "conflicts": ["directory"],
                            }
                        ],
                        "pagination": {
                            "total": 1,
                            "page": 1,
                            "limit": 50,
                            "pages": 1,
                            "has_next": False,
                            "has_prev": False,
                        },
                    }
                }
            },
        }
    },
)
async def list_users(
    sources: Optional[List[Source]] = Query(None, description="Restrict to these sources (repeat the parameter)"),
    search: Optional[str] = Query(None, description="Case-insensitive substring match on email and name fields"),
    is_active: Optional[bool] = Query(None),
    sort_by: str = Query("updated_at", description="Canonical field or attribute name"),
    sort_order: SortOrder = Query(SortOrder.DESC),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=1000),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> Page[UnifiedUser]:
    query = UserQuery(
        sources=sources,
        search=search,
        is_active=is_active,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return await engine.aggregator.get_unified_users(query)


@ROUTER_USERS.get("/users/stats", response_model=DashboardStats)
async def get_user_stats(engine: IdentitySyncEngine = Depends(get_engine)) -> DashboardStats:
    """Totals per source, conflict count and the latest sync time."""
    return await engine.aggregator.get_dashboard_stats()


@ROUTER_USERS.get("/users/by-email/{email}", response_model=List[UnifiedUser])
async def get_users_by_email(email: str, engine: IdentitySyncEngine = Depends(get_engine)) -> List[UnifiedUser]:
    return await engine.aggregator.find_users_by_email(email)


@ROUTER_USERS.get("/users/export", response_model=List[UnifiedUser])
async def export_users(request: Request, engine: IdentitySyncEngine = Depends(get_engine)) -> List[UnifiedUser]:
    """Every user of every source, ordered by email then source."""
    users = await engine.aggregator.export_all_users()
    logger.info("Users exported", method=request.method, path=request.url.path, count=len(users))
    return users


# =============================================================================
# UPLOAD
# =============================================================================


@ROUTER_USERS.post(
    "/users/upload/analyze",
    response_model=UploadAnalysis,
    responses={
        status.HTTP_200_OK: {
            "description": "Column preview and suggested mapping; nothing is stored",
            "content": {
                "application/json": {
                    "example": {
                        "row_count": 2,
                        "columns": ["E-Mail", "Vorname", "Kostenstelle"],
                        "sample_rows": [{"E-Mail": "a@example.com", "Vorname": "Anna", "Kostenstelle": "4711"}],
                        "suggested_mapping": {"E-Mail": "email", "Vorname": "first_name"},
                        "issues": [],
                    }
                }
            },
        }
    },
)
async def analyze_upload(data: UploadRequest, engine: IdentitySyncEngine = Depends(get_engine)) -> UploadAnalysis:
    return engine.uploads.analyze_upload(data.rows)


@ROUTER_USERS.post(
    "/users/upload",
    response_model=IngestResult,
    responses={
        status.HTTP_200_OK: {
            "description": "Rows applied to the upload store; unseen columns become new fields",
            "content": {
                "application/json": {
                    "example": {
                        "total_processed": 2,
                        "added": 1,
                        "updated": 1,
                        "errors": 0,
                        "new_fields": [{"source": "upload", "field_name": "Kostenstelle", "data_type": "integer"}],
                        "invalid_rows": [],
                        "error_details": [],
                        "duration_ms": 41,
                    }
                }
            },
        }
    },
)
async def upload_users(
    request: Request,
    data: UploadRequest,
    uploaded_by: str = Query("api", description=ACTOR_DESCRIPTION),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> IngestResult:
    logger.info(
        "Upload received",
        method=request.method,
        path=request.url.path,
        rows=len(data.rows),
        mode=data.mode.value,
        uploaded_by=uploaded_by,
    )
    return await engine.uploads.process_upload(data.rows, mode=data.mode, mapping=data.mapping, uploaded_by=uploaded_by)


# =============================================================================
# MANUAL RECORDS
# =============================================================================


@ROUTER_USERS.get("/users/manual", response_model=List[IdentityRecord])
async def list_manual_records(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> List[IdentityRecord]:
    return await engine.manual.list_records(limit=limit, offset=offset)


@ROUTER_USERS.post(
    "/users/manual",
    response_model=IdentityRecord,
    status_code=status.HTTP_201_CREATED,
    responses={
        status.HTTP_201_CREATED: {"description": "Manual record created"},
        status.HTTP_409_CONFLICT: {"description": "Email already exists in the manual store"},
    },
)
async def create_manual_record(
    request: Request,
    data: ManualRecordCreate,
    created_by: str = Query("api", description=ACTOR_DESCRIPTION),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> IdentityRecord:
    logger.info("Creating manual record", method=request.method, path=request.url.path, created_by=created_by)
    return await engine.manual.create_record(data, created_by=created_by)


@ROUTER_USERS.post("/users/manual/bulk", response_model=IngestResult)
async def bulk_create_manual_records(
    request: Request,
    items: List[ManualRecordCreate] = Body(..., min_length=1),
    created_by: str = Query("api", description=ACTOR_DESCRIPTION),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> IngestResult:
    """Create several records; a failing item does not stop the others."""
    logger.info(
        "Bulk creating manual records", method=request.method, path=request.url.path, count=len(items)
    )
    return await engine.manual.bulk_create(items, created_by=created_by)


@ROUTER_USERS.get(
    "/users/manual/{record_id}",
    response_model=IdentityRecord,
    responses={status.HTTP_404_NOT_FOUND: {"description": "Manual record not found"}},
)
async def get_manual_record(record_id: str, engine: IdentitySyncEngine = Depends(get_engine)) -> IdentityRecord:
    return await engine.manual.get_record(record_id)


@ROUTER_USERS.put(
    "/users/manual/{record_id}",
    response_model=IdentityRecord,
    responses={
        status.HTTP_404_NOT_FOUND: {"description": "Manual record not found"},
        status.HTTP_409_CONFLICT: {"description": "New email already exists in the manual store"},
    },
)
async def update_manual_record(
    record_id: str,
    request: Request,
    data: ManualRecordUpdate,
    updated_by: str = Query("api", description=ACTOR_DESCRIPTION),
    engine: IdentitySyncEngine = Depends(get_engine),
) -> IdentityRecord:
    logger.info("Updating manual record", method=request.method, path=request.url.path, record_id=record_id)
    return await engine.manual.update_record(record_id, data, updated_by=updated_by)


@ROUTER_USERS.delete(
    "/users/manual/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"description": "Manual record not found"}},
)
async def delete_manual_record(
    record_id: str,
    request: Request,
    deleted_by: str = Query("api", description=ACTOR_DESCRIPTION),
    engine: IdentitySyncEngine = Depends(get_engine),
):
    logger.info("Deleting manual record", method=request.method, path=request.url.path, record_id=record_id)
    await engine.manual.delete_record(record_id, deleted_by=deleted_by)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
