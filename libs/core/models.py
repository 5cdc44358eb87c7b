from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GenerationSource(str, Enum):
    cache = "cache"
    generated = "generated"


class GenerationKind(str, Enum):
    role_analysis = "role_analysis"
    roadmap = "roadmap"
    resource_search = "resource_search"
    course = "course"


class ProjectStatus(str, Enum):
    saved = "saved"
    active = "active"
    completed = "completed"


class CacheEntry(BaseModel):
    scope: str
    normalized_key: str
    payload: Any
    created_at: datetime


class GenerationResult(BaseModel):
    success: bool = True
    data: Any
    source: GenerationSource


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


def _user_id_text(value: Any) -> Any:
    # Clients send numeric ids as JSON numbers.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class RoleAnalysisRequest(_CamelModel):
    role: Optional[str] = None
    level: Optional[str] = None
    region: Optional[str] = None
    refresh: bool = False


class RoadmapRequest(_CamelModel):
    role: Optional[str] = None
    level: Optional[str] = None
    region: Optional[str] = None
    path: Optional[str] = None
    qualifiers: List[str] = Field(default_factory=list)
    user_id: Optional[str] = Field(default=None, alias="userId")
    refresh: bool = False

    _user_id_as_text = field_validator("user_id", mode="before")(_user_id_text)


class ResourceSearchRequest(_CamelModel):
    query: Optional[str] = None
    role: Optional[str] = None
    refresh: bool = False


class CourseRequest(_CamelModel):
    topic: Optional[str] = None
    level: Optional[str] = None
    refresh: bool = False


class SnapshotTotals(BaseModel):
    xp: int = 0
    active: int = 0
    completed: int = 0
    saved: int = 0
    total: int = 0


class Snapshot(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)
    totals: SnapshotTotals = Field(default_factory=SnapshotTotals)
    timestamp: datetime


class NotifyRequest(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    event: str = "refresh"

    _user_id_as_text = field_validator("user_id", mode="before")(_user_id_text)


class NotifyResponse(_CamelModel):
    success: bool = True
    client_count: int = Field(alias="clientCount")


class StatsResponse(_CamelModel):
    connected_users: int = Field(alias="connectedUsers")
    connected_tabs: int = Field(alias="connectedTabs")


class ProjectCreate(_CamelModel):
    user_id: str = Field(alias="userId")
    title: str
    description: str = ""
    role: Optional[str] = None
    status: ProjectStatus = ProjectStatus.saved
    progress_data: Dict[str, Any] = Field(default_factory=dict)
    project_data: Dict[str, Any] = Field(default_factory=dict)

    _user_id_as_text = field_validator("user_id", mode="before")(_user_id_text)


class ProjectUpdate(_CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    progress_data: Optional[Dict[str, Any]] = None
    project_data: Optional[Dict[str, Any]] = None


class Project(BaseModel):
    id: str
    user_id: str
    title: str
    description: str = ""
    role: Optional[str] = None
    status: ProjectStatus
    progress_data: Dict[str, Any] = Field(default_factory=dict)
    project_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_updated: datetime
