from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from jsonschema import Draft202012Validator

from libs.core import logging as core_logging
from libs.core.errors import ExtractionFailure, UpstreamUnavailable, ValidationError
from libs.core.extraction import ExtractionResult, extract_json
from libs.core.generation_cache import GLOBAL_SCOPE, GenerationCache
from libs.core.llm_provider import LLMProvider, LLMProviderError
from libs.core.models import GenerationResult, GenerationSource

LOGGER = core_logging.get_logger("generation")


@dataclass(frozen=True)
class GenerationRequest:
    normalized_key: str
    prompt: str
    scope: str = GLOBAL_SCOPE
    system_prompt: Optional[str] = None
    schema: Optional[Dict[str, Any]] = None


class GenerationClient:
    """One bounded call to the completion service.

    There is no automatic retry here: a duplicate call costs as much as the
    first one. Provider-level retries stay opt-in through ``max_retries``.
    """

    def __init__(self, provider: LLMProvider, timeout_s: float | None = 60.0) -> None:
        self.provider = provider
        self.timeout_s = timeout_s

    def complete(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        try:
            response = _run_with_timeout(
                lambda: self.provider.generate(prompt, system_prompt=system_prompt),
                self.timeout_s,
            )
        except LLMProviderError as exc:
            raise UpstreamUnavailable(f"generation_failed:{exc}") from exc
        except FuturesTimeoutError as exc:
            raise UpstreamUnavailable(f"generation_timed_out:after {self.timeout_s}s") from exc
        except (OSError, ValueError) as exc:
            raise UpstreamUnavailable(f"generation_failed:{exc}") from exc
        return response.content


def _run_with_timeout(handler: Callable[[], Any], timeout_s: float | None) -> Any:
    if not timeout_s or timeout_s <= 0:
        return handler()
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(handler)
    try:
        return future.result(timeout=float(timeout_s))
    finally:
        # A hung upstream call keeps its worker thread; the caller is not blocked on it.
        executor.shutdown(wait=False, cancel_futures=True)


class CacheOrGenerate:
    """Serve a generation request from the cache, generating at most once per key.

    Concurrent misses for the same ``(scope, key)`` share one in-flight
    future: the first caller generates, the rest wait for its outcome. Slots
    live only in memory and are dropped on success and on failure.
    """

    def __init__(
        self,
        cache: GenerationCache,
        client: GenerationClient,
        extractor: Callable[[Any], ExtractionResult] = extract_json,
    ) -> None:
        self._cache = cache
        self._client = client
        self._extractor = extractor
        self._inflight: Dict[Tuple[str, str], Future] = {}
        self._lock = threading.Lock()

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def run(self, request: GenerationRequest, force_refresh: bool = False) -> GenerationResult:
        if not request.normalized_key or not request.normalized_key.strip():
            raise ValidationError("normalized key is required")
        scope = request.scope or GLOBAL_SCOPE
        if not force_refresh:
            cached = self._lookup(scope, request.normalized_key)
            if cached is not None:
                return cached

        slot = (scope, request.normalized_key)
        with self._lock:
            future = self._inflight.get(slot)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[slot] = future
        if not leader:
            LOGGER.info("generation_inflight_join", scope=scope, key=request.normalized_key)
            return future.result()

        try:
            result = None
            if not force_refresh:
                # Another leader may have finished between our miss and taking the slot.
                result = self._lookup(scope, request.normalized_key)
            if result is None:
                result = self._generate(scope, request, force_refresh)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._inflight.pop(slot, None)

    def _lookup(self, scope: str, key: str) -> Optional[GenerationResult]:
        try:
            entry = self._cache.get(scope, key)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("generation_cache_read_failed", scope=scope, key=key, error=str(exc))
            return None
        if entry is None:
            return None
        LOGGER.info("generation_cache_hit", scope=scope, key=key)
        return GenerationResult(data=entry.payload, source=GenerationSource.cache)

    @core_logging.log_entry_exit("generation", "generate")
    def _generate(
        self, scope: str, request: GenerationRequest, force_refresh: bool
    ) -> GenerationResult:
        key = request.normalized_key
        LOGGER.info("generation_started", scope=scope, key=key, refresh=force_refresh)
        text = self._client.complete(request.prompt, system_prompt=request.system_prompt)
        extracted = self._extractor(text)
        if not extracted.ok:
            LOGGER.warning(
                "generation_extraction_failed",
                scope=scope,
                key=key,
                reason=extracted.error,
                preview=text[:200] if isinstance(text, str) else None,
            )
            raise ExtractionFailure(f"extraction_failed:{extracted.error}")
        _validate_shape(request.schema, extracted.value)
        payload = extracted.value
        try:
            if force_refresh:
                entry = self._cache.replace(scope, key, payload)
            else:
                entry = self._cache.put_if_absent(scope, key, payload)
            payload = entry.payload
        except Exception as exc:  # noqa: BLE001
            # The generated value is still served; the next request regenerates.
            LOGGER.error("generation_cache_write_failed", scope=scope, key=key, error=str(exc))
        LOGGER.info("generation_completed", scope=scope, key=key, strategy=extracted.strategy)
        return GenerationResult(data=payload, source=GenerationSource.generated)


def _validate_shape(schema: Optional[Dict[str, Any]], payload: Any) -> None:
    if not schema:
        return
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(payload), key=lambda err: str(list(err.path)))
    if errors:
        messages = "; ".join(
            f"{'/'.join(map(str, err.path)) or '<root>'}: {err.message}" for err in errors[:5]
        )
        raise ExtractionFailure(f"unexpected_shape:{messages}")
