from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from libs.core.errors import ValidationError

SNAPSHOT_EVENT = "snapshot"
REFRESH_EVENT = "refresh"
PROJECT_CREATED_EVENT = "project.created"
PROJECT_UPDATED_EVENT = "project.updated"
PROJECT_DELETED_EVENT = "project.deleted"

KNOWN_EVENTS = frozenset(
    {SNAPSHOT_EVENT, REFRESH_EVENT, PROJECT_CREATED_EVENT, PROJECT_UPDATED_EVENT, PROJECT_DELETED_EVENT}
)

HEARTBEAT_MESSAGE = ": ping\n\n"


def _json_fallback(value: object) -> object:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, set):
        return list(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def validate_event_name(event_name: str) -> str:
    name = (event_name or "").strip()
    if not name:
        raise ValidationError("event name is required")
    if "\n" in name or "\r" in name:
        raise ValidationError("event name must be a single line")
    return name


def format_event(event_name: str, payload: Any) -> str:
    name = validate_event_name(event_name)
    data = json.dumps(payload, default=_json_fallback, ensure_ascii=False)
    return f"event: {name}\ndata: {data}\n\n"
