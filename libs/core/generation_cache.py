from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import redis

from libs.core.errors import PersistenceFailure
from libs.core.models import CacheEntry

GLOBAL_SCOPE = "global"


class GenerationCacheError(PersistenceFailure):
    pass


class GenerationCache:
    """Persistent normalized-key -> payload store.

    Entries are written whole: ``put_if_absent`` never touches an existing
    row and ``replace`` swaps the full payload for an explicit regeneration.
    """

    def get(self, scope: str, key: str) -> Optional[CacheEntry]:  # pragma: no cover - interface
        raise NotImplementedError

    def put_if_absent(self, scope: str, key: str, payload: Any) -> CacheEntry:  # pragma: no cover - interface
        raise NotImplementedError

    def replace(self, scope: str, key: str, payload: Any) -> CacheEntry:  # pragma: no cover - interface
        raise NotImplementedError


class RedisGenerationCache(GenerationCache):
    def __init__(self, client: redis.Redis, prefix: str = "generation_cache:") -> None:
        self._client = client
        self._prefix = prefix

    def _redis_key(self, scope: str, key: str) -> str:
        return f"{self._prefix}{scope}:{key}"

    def get(self, scope: str, key: str) -> Optional[CacheEntry]:
        try:
            raw = self._client.get(self._redis_key(scope, key))
        except redis.RedisError as exc:
            raise GenerationCacheError(f"redis_error:{exc}") from exc
        if not raw:
            return None
        return _decode_entry(scope, key, raw)

    def put_if_absent(self, scope: str, key: str, payload: Any) -> CacheEntry:
        entry = CacheEntry(scope=scope, normalized_key=key, payload=payload, created_at=datetime.utcnow())
        try:
            stored = self._client.set(self._redis_key(scope, key), _encode_entry(entry), nx=True)
            if stored:
                return entry
            raw = self._client.get(self._redis_key(scope, key))
        except redis.RedisError as exc:
            raise GenerationCacheError(f"redis_error:{exc}") from exc
        if not raw:
            # Lost the race to a writer whose entry has since expired or been removed.
            return entry
        return _decode_entry(scope, key, raw)

    def replace(self, scope: str, key: str, payload: Any) -> CacheEntry:
        entry = CacheEntry(scope=scope, normalized_key=key, payload=payload, created_at=datetime.utcnow())
        try:
            self._client.set(self._redis_key(scope, key), _encode_entry(entry))
        except redis.RedisError as exc:
            raise GenerationCacheError(f"redis_error:{exc}") from exc
        return entry


def _encode_entry(entry: CacheEntry) -> str:
    return json.dumps({"payload": entry.payload, "created_at": entry.created_at.isoformat()})


def _decode_entry(scope: str, key: str, raw: str | bytes) -> CacheEntry:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        data = json.loads(raw)
        created_at = datetime.fromisoformat(data["created_at"])
        payload = data["payload"]
    except (ValueError, KeyError, TypeError) as exc:
        raise GenerationCacheError(f"corrupt_cache_entry:{key}") from exc
    return CacheEntry(scope=scope, normalized_key=key, payload=payload, created_at=created_at)
