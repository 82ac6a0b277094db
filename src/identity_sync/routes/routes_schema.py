"""Schema API routes: registered fields per source."""

from typing import List

from fastapi import APIRouter
from fastapi import Depends
from fastapi import status

from identity_sync.dependencies import get_engine
from identity_sync.engine import IdentitySyncEngine
from identity_sync.enums import Source
from identity_sync.models.schema import FieldRegistryEntry
from identity_sync.models.schema import SchemaReport

ROUTER_SCHEMA = APIRouter(tags=["Schema"])


@ROUTER_SCHEMA.get(
    "/schema/{source}",
    response_model=List[FieldRegistryEntry],
    responses={
        status.HTTP_200_OK: {
            "description": "Every registered field of the source, defaults included",
            "content": {
                "application/json": {
                    "example": [
                        {
                            "source": "ldap",
                            "field_name": "department",
                            "data_type": "text",
                            "max_length": 255,
                            "is_required": False,
                            "added_at": "2026-01-05T06:15:04Z",
                        }
                    ]
                }
            },
        }
    },
)
async def get_schema(source: Source, engine: IdentitySyncEngine = Depends(get_engine)) -> List[FieldRegistryEntry]:
    return await engine.store.get_field_registry(source)


@ROUTER_SCHEMA.get("/schema/{source}/report", response_model=SchemaReport)
async def get_schema_report(source: Source, engine: IdentitySyncEngine = Depends(get_engine)) -> SchemaReport:
    """Field counts by type and the fields added in the last week."""
    return await engine.registry.generate_schema_report(source)
