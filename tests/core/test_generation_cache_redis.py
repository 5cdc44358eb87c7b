import pytest
import redis

from libs.core.generation_cache import GenerationCacheError, RedisGenerationCache


class _RedisStub:
    def __init__(self):
        self.store = {}
        self.fail = False

    def get(self, key):
        if self.fail:
            raise redis.ConnectionError("down")
        return self.store.get(key)

    def set(self, key, value, nx=False):
        if self.fail:
            raise redis.ConnectionError("down")
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True


def test_put_if_absent_keeps_first_writer():
    stub = _RedisStub()
    cache = RedisGenerationCache(stub)

    first = cache.put_if_absent("global", "k", {"v": 1})
    second = cache.put_if_absent("global", "k", {"v": 2})

    assert first.payload == {"v": 1}
    assert second.payload == {"v": 1}
    assert cache.get("global", "k").payload == {"v": 1}
    assert list(stub.store) == ["generation_cache:global:k"]


def test_replace_overwrites_entry():
    cache = RedisGenerationCache(_RedisStub())
    cache.put_if_absent("global", "k", {"v": 1})
    cache.replace("global", "k", {"v": 2})
    assert cache.get("global", "k").payload == {"v": 2}


def test_missing_entry_returns_none():
    assert RedisGenerationCache(_RedisStub()).get("user:7", "k") is None


def test_redis_errors_are_wrapped():
    stub = _RedisStub()
    stub.fail = True
    cache = RedisGenerationCache(stub)
    with pytest.raises(GenerationCacheError):
        cache.get("global", "k")
    with pytest.raises(GenerationCacheError):
        cache.put_if_absent("global", "k", {})


def test_corrupt_entry_is_reported():
    stub = _RedisStub()
    stub.store["generation_cache:global:k"] = "not json"
    with pytest.raises(GenerationCacheError):
        RedisGenerationCache(stub).get("global", "k")
