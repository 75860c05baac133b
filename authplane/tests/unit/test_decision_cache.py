from __future__ import annotations

import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from authplane.core.config import Settings
from authplane.core.errors import CacheUnavailableError
from authplane.services.cache import (
    CacheKeyPrefix,
    MemoryDecisionCache,
    RedisDecisionCache,
    build_cache_key,
    create_decision_cache,
    with_cache_fallback,
)


def _to_fnmatch(pattern: str) -> str:
    # Redis escapes glob metacharacters with a backslash; fnmatch needs a one-char class.
    out = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "\\" and index + 1 < len(pattern):
            out.append(f"[{pattern[index + 1]}]")
            index += 2
            continue
        out.append(char)
        index += 1
    return "".join(out)


class _StubRedis:
    # Minimal async Redis surface used by the decision cache.
    def __init__(self, *, fail: bool = False) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis down")

    async def get(self, key: str):
        self._check()
        return self.values.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._check()
        self.values[key] = value
        self.ttls[key] = ex or 0

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
        return removed

    async def scan_iter(self, match: str, count: int = 10):
        self._check()
        for key in list(self.values):
            if fnmatch.fnmatchcase(key, _to_fnmatch(match)):
                yield key


class _Clock:
    def __init__(self) -> None:
        self.value = 1_000.0

    def __call__(self) -> float:
        return self.value


def test_cache_keys_are_colon_joined() -> None:
    key = build_cache_key(CacheKeyPrefix.AUTH_DECISION, "t1", "u1", "search", "read", "_")
    assert key == "auth:t1:u1:search:read:_"


@pytest.mark.asyncio
async def test_memory_cache_expires_entries() -> None:
    clock = _Clock()
    cache = MemoryDecisionCache(time_provider=clock)
    await cache.set("auth:t1:u1", {"allowed": True}, 60)

    entry = await cache.get("auth:t1:u1")
    assert entry is not None
    assert entry.data == {"allowed": True}
    assert entry.cached_at

    clock.value += 60
    assert await cache.get("auth:t1:u1") is None


@pytest.mark.asyncio
async def test_memory_cache_deletes_by_prefix() -> None:
    cache = MemoryDecisionCache()
    await cache.set("auth:t1:u1", 1)
    await cache.set("auth:t1:u2", 2)
    await cache.set("auth:t2:u1", 3)

    await cache.delete_by_prefix("auth:t1:")
    assert await cache.get("auth:t1:u1") is None
    assert await cache.get("auth:t1:u2") is None
    assert (await cache.get("auth:t2:u1")).data == 3


@pytest.mark.asyncio
async def test_redis_cache_round_trip_with_prefix_and_ttl() -> None:
    redis = _StubRedis()
    cache = RedisDecisionCache(redis, prefix="authplane")
    await cache.set("auth:t1:u1", {"allowed": False}, 30)

    assert "authplane:auth:t1:u1" in redis.values
    assert redis.ttls["authplane:auth:t1:u1"] == 30
    entry = await cache.get("auth:t1:u1")
    assert entry.data == {"allowed": False}

    redis.values["authplane:auth:t1:bad"] = "not-json"
    assert await cache.get("auth:t1:bad") is None


@pytest.mark.asyncio
async def test_redis_prefix_delete_escapes_glob_characters() -> None:
    redis = _StubRedis()
    cache = RedisDecisionCache(redis)
    await cache.set("auth:t[1]:u1", 1)
    await cache.set("auth:t1:u1", 2)

    await cache.delete_by_prefix("auth:t[1]:")
    assert await cache.get("auth:t[1]:u1") is None
    assert (await cache.get("auth:t1:u1")).data == 2


@pytest.mark.asyncio
async def test_redis_failures_surface_as_cache_unavailable() -> None:
    cache = RedisDecisionCache(_StubRedis(fail=True))
    with pytest.raises(CacheUnavailableError):
        await cache.get("auth:t1:u1")
    with pytest.raises(CacheUnavailableError):
        await cache.set("auth:t1:u1", 1)
    with pytest.raises(CacheUnavailableError):
        await cache.delete_by_prefix("auth:t1:")


@pytest.mark.asyncio
async def test_fallback_caches_successful_results() -> None:
    cache = MemoryDecisionCache()

    async def load():
        return {"role": "admin"}

    result = await with_cache_fallback(cache, "membership:t1:u1", load)
    assert result.data == {"role": "admin"}
    assert result.degraded is False
    assert (await cache.get("membership:t1:u1")).data == {"role": "admin"}


@pytest.mark.asyncio
async def test_fallback_does_not_cache_missing_values() -> None:
    cache = MemoryDecisionCache()

    async def load():
        return None

    result = await with_cache_fallback(cache, "membership:t1:u1", load)
    assert result.data is None
    assert await cache.get("membership:t1:u1") is None


@pytest.mark.asyncio
async def test_fallback_serves_cached_value_when_store_fails() -> None:
    cache = MemoryDecisionCache()
    await cache.set("membership:t1:u1", {"role": "member"})

    async def broken():
        raise RuntimeError("database unavailable")

    result = await with_cache_fallback(
        cache, "membership:t1:u1", broken, decode=lambda payload: payload["role"]
    )
    assert result.data == "member"
    assert result.degraded is True
    assert result.cached_at


@pytest.mark.asyncio
async def test_fallback_reraises_without_cached_value() -> None:
    cache = MemoryDecisionCache()

    async def broken():
        raise RuntimeError("database unavailable")

    with pytest.raises(RuntimeError, match="database unavailable"):
        await with_cache_fallback(cache, "membership:t1:u1", broken)


@pytest.mark.asyncio
async def test_fallback_tolerates_cache_write_failure() -> None:
    cache = RedisDecisionCache(_StubRedis(fail=True))

    async def load():
        return 42

    result = await with_cache_fallback(cache, "tenant:t1", load)
    assert result.data == 42
    assert result.degraded is False


def test_decision_cache_factory_respects_settings() -> None:
    assert create_decision_cache(Settings(_env_file=None, auth_cache_enabled=False)) is None
    cache = create_decision_cache(Settings(_env_file=None, redis_url="redis://localhost:6390/3"))
    assert isinstance(cache, RedisDecisionCache)
