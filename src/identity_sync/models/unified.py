"""Read-side models for the merged view across all stores."""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import Generic
from typing import List
from typing import Optional
from typing import TypeVar

from pydantic import BaseModel
from pydantic import Field

from identity_sync.enums import SortOrder
from identity_sync.enums import Source

T = TypeVar("T")


class UnifiedUser(BaseModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    is_active: bool = True
    source: Source
    external_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)  # The full stored row
    conflicts: List[Source] = Field(default_factory=list)  # Other sources holding the same email


class UserQuery(BaseModel):
    sources: Optional[List[Source]] = None  # None means all sources
    search: Optional[str] = None
    is_active: Optional[bool] = None
    sort_by: str = "updated_at"
    sort_order: SortOrder = SortOrder.DESC
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=1000)


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int
    has_next: bool
    has_prev: bool


class Page(BaseModel, Generic[T]):
    items: List[T]
    pagination: Pagination


class DashboardStats(BaseModel):
    total_users: int
    source_breakdown: Dict[Source, int]
    conflicts: int
    last_activity: Optional[datetime] = None
