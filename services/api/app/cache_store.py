from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from libs.core.generation_cache import GenerationCache, GenerationCacheError
from libs.core.models import CacheEntry
from .models import GenerationCacheRecord


class SqlGenerationCache(GenerationCache):
    """Generation cache stored in the ``generation_cache`` table.

    Inserts rely on the ``(scope, normalized_key)`` unique constraint: losing
    an insert race is reported by the database and resolved by reading back
    the row that won.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get(self, scope: str, key: str) -> Optional[CacheEntry]:
        try:
            with self._session_factory() as db:
                record = _find(db, scope, key)
                return _to_entry(record) if record else None
        except SQLAlchemyError as exc:
            raise GenerationCacheError(f"cache_read_failed:{exc}") from exc

    def put_if_absent(self, scope: str, key: str, payload: Any) -> CacheEntry:
        try:
            with self._session_factory() as db:
                existing = _find(db, scope, key)
                if existing:
                    return _to_entry(existing)
                record = _new_record(scope, key, payload)
                db.add(record)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    winner = _find(db, scope, key)
                    if winner is None:
                        raise
                    return _to_entry(winner)
                return _to_entry(record)
        except SQLAlchemyError as exc:
            raise GenerationCacheError(f"cache_write_failed:{exc}") from exc

    def replace(self, scope: str, key: str, payload: Any) -> CacheEntry:
        try:
            with self._session_factory() as db:
                db.query(GenerationCacheRecord).filter(
                    GenerationCacheRecord.scope == scope,
                    GenerationCacheRecord.normalized_key == key,
                ).delete(synchronize_session=False)
                record = _new_record(scope, key, payload)
                db.add(record)
                db.commit()
                return _to_entry(record)
        except SQLAlchemyError as exc:
            raise GenerationCacheError(f"cache_write_failed:{exc}") from exc


def _find(db: Session, scope: str, key: str) -> Optional[GenerationCacheRecord]:
    return (
        db.query(GenerationCacheRecord)
        .filter(GenerationCacheRecord.scope == scope, GenerationCacheRecord.normalized_key == key)
        .first()
    )


def _new_record(scope: str, key: str, payload: Any) -> GenerationCacheRecord:
    return GenerationCacheRecord(
        id=str(uuid.uuid4()),
        scope=scope,
        normalized_key=key,
        payload=payload,
        created_at=datetime.utcnow(),
    )


def _to_entry(record: GenerationCacheRecord) -> CacheEntry:
    return CacheEntry(
        scope=record.scope,
        normalized_key=record.normalized_key,
        payload=record.payload,
        created_at=record.created_at,
    )
