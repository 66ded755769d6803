"""Fail-open response cache backed by Redis."""

from __future__ import annotations

import asyncio
import enum
import hashlib
import json
import logging
import time
from typing import Any, Callable

from redis import asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class CacheState(str, enum.Enum):
    DISABLED = "disabled"
    HEALTHY = "healthy"
    DEGRADED = "degraded"


def request_cache_key(
    service: str,
    method: str,
    access_token: str | None,
    url: str,
    body: Any = None,
) -> str:
    """Build the cache key for an upstream request.

    Authenticated requests are scoped to a digest of the token so that two
    users never share a cached response and raw tokens never land in Redis.
    """

    if access_token:
        scope = hashlib.sha256(access_token.encode("utf-8")).hexdigest()[:16]
    else:
        scope = "public"
    key = f"{service}:{method.upper()}:{scope}:{url}"
    if body is not None:
        key = f"{key}:{json.dumps(body, sort_keys=True, separators=(',', ':'))}"
    return key


def metadata_cache_key(tmdb_id: int | str, content_type: str, language: str) -> str:
    return f"tmdb:{content_type}:{tmdb_id}:{language}"


class ResponseCache:
    """Advisory JSON cache whose store failures degrade to misses.

    ``get`` and ``set`` never raise. When Redis misbehaves the cache enters
    the ``degraded`` state and skips the store entirely until
    ``recovery_seconds`` have elapsed; the next operation then probes Redis
    again and returns the cache to ``healthy`` on success.
    """

    def __init__(
        self,
        client: aioredis.Redis | None,
        *,
        recovery_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._recovery_seconds = recovery_seconds
        self._clock = clock
        self._degraded_since: float | None = None

    @classmethod
    def from_url(
        cls,
        url: str | None,
        *,
        recovery_seconds: float = 30.0,
    ) -> "ResponseCache":
        if not url:
            logger.info("No REDIS_URL configured; response caching disabled")
            return cls(None, recovery_seconds=recovery_seconds)
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        return cls(client, recovery_seconds=recovery_seconds)

    @property
    def state(self) -> CacheState:
        if self._client is None:
            return CacheState.DISABLED
        if self._degraded_since is not None:
            return CacheState.DEGRADED
        return CacheState.HEALTHY

    def _available(self) -> bool:
        if self._client is None:
            return False
        if self._degraded_since is None:
            return True
        return self._clock() - self._degraded_since >= self._recovery_seconds

    def _mark_failure(self, operation: str, key: str, exc: BaseException) -> None:
        if self._degraded_since is None:
            logger.warning(
                "Redis %s failed for %s, caching degraded: %s", operation, key, exc
            )
        self._degraded_since = self._clock()

    def _mark_success(self) -> None:
        if self._degraded_since is not None:
            logger.info("Redis reachable again, caching restored")
            self._degraded_since = None

    async def get(self, key: str) -> Any | None:
        """Return the cached value for ``key`` or ``None`` on a miss."""

        if not self._available():
            return None
        try:
            raw = await self._client.get(key)
        except _STORE_ERRORS as exc:
            self._mark_failure("GET", key, exc)
            return None
        self._mark_success()
        if raw is None:
            logger.debug("Cache miss for %s", key)
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None
        logger.debug("Cache hit for %s", key)
        return value

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        if not self._available() or ttl_seconds <= 0:
            return
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError):
            logger.warning("Skipping cache write for %s: value is not JSON serialisable", key)
            return
        try:
            await self._client.set(key, payload, ex=int(ttl_seconds))
        except _STORE_ERRORS as exc:
            self._mark_failure("SET", key, exc)
            return
        self._mark_success()

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except _STORE_ERRORS as exc:
            logger.debug("Ignoring error while closing Redis client: %s", exc)
