from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping

from libs.core.models import ProjectStatus, Snapshot, SnapshotTotals

ProjectLoader = Callable[[str], Iterable[Mapping[str, Any]]]

JSON_FIELDS = ("progress_data", "project_data")


class SnapshotBuilder:
    """Assemble the dashboard view pushed to live sinks.

    The loader returns the user's project rows. Structured columns may come
    back as dicts or as their JSON text, depending on which writer stored
    them, so both are accepted.
    """

    def __init__(self, loader: ProjectLoader) -> None:
        self._loader = loader

    def build(self, user_id: str) -> Snapshot:
        items = [_normalize_item(row) for row in self._loader(user_id)]
        return Snapshot(items=items, totals=_totals(items), timestamp=datetime.utcnow())


def coerce_structured(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, (str, bytes)):
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _normalize_item(row: Mapping[str, Any]) -> Dict[str, Any]:
    item = dict(row)
    for field in JSON_FIELDS:
        item[field] = coerce_structured(item.get(field))
    return item


def _xp_of(item: Mapping[str, Any]) -> int:
    raw = item.get("progress_data", {}).get("xp", 0)
    if isinstance(raw, bool):
        return 0
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def _totals(items: List[Dict[str, Any]]) -> SnapshotTotals:
    statuses = [str(item.get("status") or "") for item in items]
    return SnapshotTotals(
        xp=sum(_xp_of(item) for item in items),
        active=statuses.count(ProjectStatus.active.value),
        completed=statuses.count(ProjectStatus.completed.value),
        saved=statuses.count(ProjectStatus.saved.value),
        total=len(items),
    )
