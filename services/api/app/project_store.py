from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from libs.core import models
from libs.core.realtime import user_key
from libs.core.snapshots import coerce_structured
from .models import UserProjectRecord


def create_project(db: Session, request: models.ProjectCreate) -> models.Project:
    now = datetime.utcnow()
    record = UserProjectRecord(
        id=str(uuid.uuid4()),
        user_id=user_key(request.user_id),
        title=request.title,
        description=request.description,
        role=request.role,
        status=request.status.value,
        progress_data=request.progress_data,
        project_data=request.project_data,
        created_at=now,
        last_updated=now,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return _to_project(record)


def update_project(db: Session, project_id: str, request: models.ProjectUpdate) -> models.Project:
    record = _get(db, project_id)
    if request.title is not None:
        record.title = request.title
    if request.description is not None:
        record.description = request.description
    if request.status is not None:
        record.status = request.status.value
    if request.progress_data is not None:
        # Merge into a fresh dict; JSON columns are not tracked for in-place edits.
        merged = dict(coerce_structured(record.progress_data))
        merged.update(request.progress_data)
        record.progress_data = merged
    if request.project_data is not None:
        record.project_data = request.project_data
    record.last_updated = datetime.utcnow()
    db.commit()
    db.refresh(record)
    return _to_project(record)


def delete_project(db: Session, project_id: str) -> str:
    record = _get(db, project_id)
    user_id = record.user_id
    db.delete(record)
    db.commit()
    return user_id


def list_projects(db: Session, user_id: str) -> List[models.Project]:
    records = (
        db.query(UserProjectRecord)
        .filter(UserProjectRecord.user_id == user_id)
        .order_by(UserProjectRecord.last_updated.desc())
        .all()
    )
    return [_to_project(record) for record in records]


def project_rows_loader(session_factory: Callable[[], Session]) -> Callable[[str], List[Dict[str, Any]]]:
    """Raw rows for the snapshot builder; JSON columns are passed through untouched."""

    def load(user_id: str) -> List[Dict[str, Any]]:
        with session_factory() as db:
            records = (
                db.query(UserProjectRecord)
                .filter(UserProjectRecord.user_id == user_id)
                .order_by(UserProjectRecord.last_updated.desc())
                .all()
            )
            return [_to_row(record) for record in records]

    return load


def _get(db: Session, project_id: str) -> UserProjectRecord:
    record: Optional[UserProjectRecord] = (
        db.query(UserProjectRecord).filter(UserProjectRecord.id == project_id).first()
    )
    if record is None:
        raise KeyError(f"unknown_project:{project_id}")
    return record


def _to_row(record: UserProjectRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "title": record.title,
        "description": record.description,
        "role": record.role,
        "status": record.status,
        "progress_data": record.progress_data,
        "project_data": record.project_data,
        "last_updated": record.last_updated.isoformat() if record.last_updated else None,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


def _to_project(record: UserProjectRecord) -> models.Project:
    return models.Project(
        id=record.id,
        user_id=record.user_id,
        title=record.title,
        description=record.description or "",
        role=record.role,
        status=models.ProjectStatus(record.status),
        progress_data=coerce_structured(record.progress_data),
        project_data=coerce_structured(record.project_data),
        created_at=record.created_at,
        last_updated=record.last_updated,
    )
