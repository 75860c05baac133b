from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import time
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from authplane.core.config import Settings, get_settings
from authplane.core.errors import CacheUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CACHE_TTL_S = 60

_SCAN_BATCH = 500


class CacheKeyPrefix:
    SESSION = "session"
    AUTH_DECISION = "auth"
    MEMBERSHIP = "membership"


def build_cache_key(*parts: str) -> str:
    return ":".join(parts)


@dataclass(frozen=True)
class CacheEntry:
    # JSON-compatible payload plus the ISO timestamp it was stored at.
    data: Any
    cached_at: str


@dataclass(frozen=True)
class CachedResult(Generic[T]):
    data: T
    # True when the primary store failed and the value came from cache.
    degraded: bool
    cached_at: str | None = None


class DecisionCache(Protocol):
    async def get(self, key: str) -> CacheEntry | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_CACHE_TTL_S) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_by_prefix(self, prefix: str) -> None: ...


def _encode_entry(value: Any) -> str:
    entry = {"data": value, "cached_at": datetime.now(timezone.utc).isoformat()}
    return json.dumps(entry, separators=(",", ":"))


def _decode_entry(raw: str | bytes | None) -> CacheEntry | None:
    # Unreadable payloads are treated as misses.
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(payload, dict) or "data" not in payload:
        return None
    return CacheEntry(data=payload["data"], cached_at=str(payload.get("cached_at") or ""))


def _escape_glob(value: str) -> str:
    # Redis MATCH uses glob syntax; escape metacharacters in literal prefixes.
    out = []
    for char in value:
        if char in "*?[]\\":
            out.append("\\")
        out.append(char)
    return "".join(out)


class RedisDecisionCache:
    def __init__(self, redis: Redis, *, prefix: str = "") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    async def get(self, key: str) -> CacheEntry | None:
        try:
            raw = await self._redis.get(self._key(key))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(f"cache read failed for {key}") from exc
        return _decode_entry(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_CACHE_TTL_S) -> None:
        payload = _encode_entry(value)
        try:
            await self._redis.set(self._key(key), payload, ex=max(1, int(ttl_seconds)))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(f"cache write failed for {key}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(f"cache delete failed for {key}") from exc

    async def delete_by_prefix(self, prefix: str) -> None:
        # SCAN is incremental, so keys written during the sweep may survive it.
        pattern = f"{_escape_glob(self._key(prefix))}*"
        batch: list[Any] = []
        try:
            async for found in self._redis.scan_iter(match=pattern, count=_SCAN_BATCH):
                batch.append(found)
                if len(batch) >= _SCAN_BATCH:
                    await self._redis.delete(*batch)
                    batch = []
            if batch:
                await self._redis.delete(*batch)
        except (RedisError, OSError) as exc:
            raise CacheUnavailableError(f"cache prefix delete failed for {prefix}") from exc


class MemoryDecisionCache:
    def __init__(self, *, time_provider: Callable[[], float] | None = None) -> None:
        # Allow time injection for deterministic expiry tests.
        self._time_provider = time_provider or time.time
        self._entries: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> CacheEntry | None:
        stored = self._entries.get(key)
        if stored is None:
            return None
        raw, expires_at = stored
        # Re-validate TTL on every read.
        if self._time_provider() >= expires_at:
            self._entries.pop(key, None)
            return None
        return _decode_entry(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_CACHE_TTL_S) -> None:
        # Serialize like the Redis backend so both return the same shapes.
        self._entries[key] = (_encode_entry(value), self._time_provider() + max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_by_prefix(self, prefix: str) -> None:
        for key in [key for key in self._entries if key.startswith(prefix)]:
            self._entries.pop(key, None)


async def with_cache_fallback(
    cache: DecisionCache,
    key: str,
    operation: Callable[[], Awaitable[T]],
    ttl_seconds: int = DEFAULT_CACHE_TTL_S,
    *,
    encode: Callable[[T], Any] | None = None,
    decode: Callable[[Any], T] | None = None,
) -> CachedResult[T]:
    """Run ``operation`` against the primary store, falling back to the cache.

    Successful non-``None`` results are written to ``key``. When the operation
    raises, a cached value is returned with ``degraded=True``; with nothing
    cached the operation's exception propagates. ``encode``/``decode`` convert
    between the domain value and its JSON-compatible cached form.
    """
    try:
        data = await operation()
    except Exception as exc:
        try:
            cached = await cache.get(key)
        except Exception as cache_exc:  # noqa: BLE001 - primary error is the one to surface
            logger.warning("cache_fallback_read_failed key=%s", key, exc_info=cache_exc)
            cached = None
        if cached is None:
            raise
        logger.warning("cache_fallback_served key=%s cached_at=%s error=%s", key, cached.cached_at, type(exc).__name__)
        value = decode(cached.data) if decode else cached.data
        return CachedResult(data=value, degraded=True, cached_at=cached.cached_at)

    if data is not None:
        try:
            await cache.set(key, encode(data) if encode else data, ttl_seconds)
        except Exception as exc:  # noqa: BLE001 - cache writes are best-effort
            logger.warning("cache_fallback_write_failed key=%s", key, exc_info=exc)
    return CachedResult(data=data, degraded=False)


def create_decision_cache(settings: Settings | None = None) -> DecisionCache | None:
    settings = settings or get_settings()
    if not settings.auth_cache_enabled:
        return None
    redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    return RedisDecisionCache(redis, prefix=settings.auth_cache_prefix)
