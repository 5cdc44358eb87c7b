import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import pytest

from libs.core.errors import ExtractionFailure, UpstreamUnavailable, ValidationError
from libs.core.generation import CacheOrGenerate, GenerationClient, GenerationRequest
from libs.core.generation_cache import GenerationCache, GenerationCacheError
from libs.core.llm_provider import LLMProvider, LLMProviderError, LLMResponse
from libs.core.models import CacheEntry, GenerationSource


class _MemoryCache(GenerationCache):
    def __init__(self) -> None:
        self.entries: Dict[Tuple[str, str], CacheEntry] = {}
        self.fail_reads = False
        self.fail_writes = False
        self._lock = threading.Lock()

    def get(self, scope: str, key: str) -> Optional[CacheEntry]:
        if self.fail_reads:
            raise GenerationCacheError("read down")
        return self.entries.get((scope, key))

    def put_if_absent(self, scope: str, key: str, payload: Any) -> CacheEntry:
        if self.fail_writes:
            raise GenerationCacheError("write down")
        with self._lock:
            existing = self.entries.get((scope, key))
            if existing is not None:
                return existing
            entry = CacheEntry(scope=scope, normalized_key=key, payload=payload, created_at=datetime.utcnow())
            self.entries[(scope, key)] = entry
            return entry

    def replace(self, scope: str, key: str, payload: Any) -> CacheEntry:
        if self.fail_writes:
            raise GenerationCacheError("write down")
        entry = CacheEntry(scope=scope, normalized_key=key, payload=payload, created_at=datetime.utcnow())
        self.entries[(scope, key)] = entry
        return entry


class _ScriptedProvider(LLMProvider):
    def __init__(self, *outputs: Any, delay_s: float = 0.0) -> None:
        self.outputs = list(outputs)
        self.calls = 0
        self.delay_s = delay_s
        self._lock = threading.Lock()

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:
        with self._lock:
            self.calls += 1
            output = self.outputs[min(self.calls, len(self.outputs)) - 1]
        if self.delay_s:
            time.sleep(self.delay_s)
        if isinstance(output, Exception):
            raise output
        return LLMResponse(content=output)


def _orchestrator(provider: LLMProvider, cache: Optional[_MemoryCache] = None) -> CacheOrGenerate:
    return CacheOrGenerate(cache or _MemoryCache(), GenerationClient(provider, timeout_s=5))


def _request(key: str = "kind=test|k=a|schema=v1", **kwargs: Any) -> GenerationRequest:
    return GenerationRequest(normalized_key=key, prompt="prompt", **kwargs)


def test_fenced_payload_is_generated_then_served_from_cache():
    provider = _ScriptedProvider('```json\n{"a":1}\n```')
    orchestrator = _orchestrator(provider)

    first = orchestrator.run(_request("k"))
    second = orchestrator.run(_request("k"))

    assert first.success is True
    assert first.data == {"a": 1}
    assert first.source == GenerationSource.generated
    assert second.data == {"a": 1}
    assert second.source == GenerationSource.cache
    assert provider.calls == 1


def test_scopes_do_not_share_entries():
    provider = _ScriptedProvider('{"a": 1}')
    orchestrator = _orchestrator(provider)
    orchestrator.run(_request("k", scope="user:1"))
    result = orchestrator.run(_request("k", scope="user:2"))
    assert result.source == GenerationSource.generated
    assert provider.calls == 2


def test_blank_key_is_rejected():
    orchestrator = _orchestrator(_ScriptedProvider('{"a": 1}'))
    with pytest.raises(ValidationError):
        orchestrator.run(_request("  "))


def test_extraction_failure_is_not_cached():
    cache = _MemoryCache()
    provider = _ScriptedProvider("Sorry, I can't do that.", '{"ok": true}')
    orchestrator = _orchestrator(provider, cache)

    with pytest.raises(ExtractionFailure) as excinfo:
        orchestrator.run(_request())
    assert excinfo.value.status_code == 502
    assert cache.entries == {}

    assert orchestrator.run(_request()).data == {"ok": True}
    assert provider.calls == 2


def test_unexpected_shape_is_an_extraction_failure():
    cache = _MemoryCache()
    orchestrator = _orchestrator(_ScriptedProvider('{"title": "x"}'), cache)
    schema = {"type": "object", "required": ["title", "skills"]}
    with pytest.raises(ExtractionFailure) as excinfo:
        orchestrator.run(_request(schema=schema))
    assert "skills" in excinfo.value.detail
    assert cache.entries == {}


def test_upstream_failure_maps_to_unavailable():
    cache = _MemoryCache()
    orchestrator = _orchestrator(_ScriptedProvider(LLMProviderError("rate limited", status_code=429)), cache)
    with pytest.raises(UpstreamUnavailable) as excinfo:
        orchestrator.run(_request())
    assert excinfo.value.status_code == 503
    assert cache.entries == {}
    assert orchestrator.inflight_count() == 0


def test_slow_upstream_times_out():
    provider = _ScriptedProvider('{"a": 1}', delay_s=0.5)
    orchestrator = CacheOrGenerate(_MemoryCache(), GenerationClient(provider, timeout_s=0.05))
    with pytest.raises(UpstreamUnavailable) as excinfo:
        orchestrator.run(_request())
    assert "timed_out" in excinfo.value.detail


def test_write_failure_still_returns_payload_and_next_call_regenerates():
    cache = _MemoryCache()
    cache.fail_writes = True
    provider = _ScriptedProvider('{"a": 1}')
    orchestrator = _orchestrator(provider, cache)

    assert orchestrator.run(_request()).data == {"a": 1}
    result = orchestrator.run(_request())
    assert result.source == GenerationSource.generated
    assert provider.calls == 2


def test_read_failure_is_treated_as_miss():
    cache = _MemoryCache()
    cache.fail_reads = True
    orchestrator = _orchestrator(_ScriptedProvider('{"a": 1}'), cache)
    result = orchestrator.run(_request())
    assert result.source == GenerationSource.generated


def test_concurrent_misses_share_one_generation():
    cache = _MemoryCache()
    provider = _ScriptedProvider('{"a": 1}', delay_s=0.2)
    orchestrator = _orchestrator(provider, cache)
    results = []
    errors = []
    start = threading.Barrier(8)

    def _worker():
        start.wait()
        try:
            results.append(orchestrator.run(_request()))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert provider.calls == 1
    assert len(results) == 8
    assert all(result.data == {"a": 1} for result in results)
    assert len(cache.entries) == 1
    assert orchestrator.inflight_count() == 0


def test_waiters_see_leader_failure_and_slot_is_released():
    provider = _ScriptedProvider(LLMProviderError("down"), '{"a": 1}', delay_s=0.2)
    orchestrator = _orchestrator(provider)
    errors = []
    start = threading.Barrier(3)

    def _worker():
        start.wait()
        try:
            orchestrator.run(_request())
        except UpstreamUnavailable as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_worker) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(errors) == 3
    assert provider.calls == 1
    assert orchestrator.inflight_count() == 0
    assert orchestrator.run(_request()).data == {"a": 1}


def test_refresh_replaces_cached_entry():
    cache = _MemoryCache()
    provider = _ScriptedProvider('{"v": 1}', '{"v": 2}')
    orchestrator = _orchestrator(provider, cache)

    orchestrator.run(_request())
    refreshed = orchestrator.run(_request(), force_refresh=True)
    cached = orchestrator.run(_request())

    assert refreshed.data == {"v": 2}
    assert refreshed.source == GenerationSource.generated
    assert cached.data == {"v": 2}
    assert cached.source == GenerationSource.cache
