"""Activity feed record types and query options."""

from datetime import datetime
from typing import Any, NotRequired, TypedDict

from pydantic import BaseModel, Field


class AuditLogItem(TypedDict):
    id: int
    action: str
    details: dict[str, Any]  # JSON object: resourceType, resourceId, resourceName, actor?, metadata?, ...
    timestamp: str  # ISO 8601, UTC
    success: bool
    user_id: str | None


class ActivityActor(TypedDict):
    id: str
    type: str  # user | system | service
    name: str


class ActivityResource(TypedDict):
    id: str
    type: str
    name: str


class ActivityChange(TypedDict):
    field: str
    old_value: Any
    new_value: Any


class Activity(TypedDict):
    id: str
    actor: ActivityActor
    action: str
    resource: ActivityResource
    timestamp: str  # ISO 8601
    metadata: NotRequired[dict[str, Any]]
    changes: NotRequired[list[ActivityChange]]
    ip_address: NotRequired[str]
    user_agent: NotRequired[str]


class ActivityFeedPage(TypedDict):
    activities: list[Activity]
    total: int
    has_more: bool
    next_cursor: NotRequired[str]


class ActorCount(TypedDict):
    actor_id: str
    name: str
    count: int


class TimelineEntry(TypedDict):
    date: str  # YYYY-MM-DD
    count: int


class ActivityStats(TypedDict):
    total_today: int
    total_week: int
    total_month: int
    by_action: dict[str, int]
    by_resource: dict[str, int]
    top_actors: list[ActorCount]
    timeline: list[TimelineEntry]


# ---------------------------------------------------------------------------
# Query options
# ---------------------------------------------------------------------------


class ActivityFilter(BaseModel):
    """Feed filter. Every set field must match (AND); unset fields impose nothing."""

    action: str | list[str] | None = Field(default=None, description="Action or list of actions")
    resource_type: str | list[str] | None = Field(default=None, description="Resource type or list of types")
    actor_id: str | None = None
    actor_type: str | None = None
    resource_id: str | None = None
    start_date: datetime | None = Field(default=None, description="Inclusive lower bound on timestamp")
    end_date: datetime | None = Field(default=None, description="Inclusive upper bound on timestamp")
    search: str | None = Field(default=None, description="Case-insensitive substring of action, actor or resource")


class ActivityFeedOptions(BaseModel):
    limit: int = Field(default=20, ge=0)
    offset: int = Field(default=0, ge=0)
    cursor: str | None = Field(default=None, description="Opaque cursor from a previous page; overrides offset")
    filter: ActivityFilter = Field(default_factory=ActivityFilter)
    include_changes: bool = True
