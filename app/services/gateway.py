"""Per-upstream request queues with caching in front of them."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from ..config import QueueLimits
from .cache import ResponseCache, request_cache_key
from .exceptions import UpstreamAuthExpired, UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestQueue:
    """Bounded scheduler enforcing a concurrency and a throughput ceiling.

    A job first takes one of ``max_concurrent`` slots, then waits until
    fewer than ``max_requests`` jobs have started within the trailing
    ``period_seconds``. Both waits are FIFO, so jobs start in submission
    order.
    """

    def __init__(
        self,
        name: str,
        limits: QueueLimits,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.limits = limits
        self._clock = clock
        self._sleep = sleep
        self._slots = asyncio.Semaphore(limits.max_concurrent)
        self._window_lock = asyncio.Lock()
        self._starts: deque[float] = deque()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def _acquire_rate_slot(self) -> None:
        async with self._window_lock:
            while True:
                now = self._clock()
                horizon = now - self.limits.period_seconds
                while self._starts and self._starts[0] <= horizon:
                    self._starts.popleft()
                if len(self._starts) < self.limits.max_requests:
                    self._starts.append(now)
                    return
                delay = self._starts[0] + self.limits.period_seconds - now
                logger.debug("Queue %s throttled for %.2fs", self.name, delay)
                await self._sleep(max(delay, 0.0))

    async def submit(self, job: Callable[[], Awaitable[T]]) -> T:
        """Run ``job`` once the queue admits it and return its result."""

        async with self._slots:
            await self._acquire_rate_slot()
            self._in_flight += 1
            try:
                return await job()
            finally:
                self._in_flight -= 1


class RequestGateway:
    """Every outbound call to one upstream goes through an instance of this."""

    def __init__(
        self,
        service: str,
        http_client: httpx.AsyncClient,
        cache: ResponseCache,
        *,
        ttl_seconds: int,
        get_queue: RequestQueue,
        post_queue: RequestQueue | None = None,
    ) -> None:
        self.service = service
        self._client = http_client
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._get_queue = get_queue
        self._post_queue = post_queue or get_queue

    async def get(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        access_token: str | None = None,
        cache_key: str | None = None,
        use_cache: bool = True,
    ) -> Any:
        return await self._request(
            "GET",
            url,
            params=params,
            access_token=access_token,
            cache_key=cache_key,
            use_cache=use_cache,
        )

    async def post(
        self,
        url: str,
        *,
        json: Any = None,
        access_token: str | None = None,
        use_cache: bool = False,
    ) -> Any:
        return await self._request(
            "POST",
            url,
            json=json,
            access_token=access_token,
            use_cache=use_cache,
        )

    async def head(self, url: str, *, params: dict[str, Any] | None = None) -> bool:
        """Return ``True`` when the upstream reports that ``url`` exists.

        Both outcomes are cached so repeated lookups skip the network.
        """

        request = self._client.build_request("HEAD", url, params=params)
        key = request_cache_key(self.service, "HEAD", None, str(request.url))
        cached = await self._cache.get(key)
        if isinstance(cached, bool):
            return cached

        response = await self._send(self._get_queue, request)
        exists = response.is_success
        await self._cache.set(key, exists, self._ttl_seconds)
        return exists

    async def _send(self, queue: RequestQueue, request: httpx.Request) -> httpx.Response:
        try:
            return await queue.submit(lambda: self._client.send(request))
        except httpx.HTTPError as exc:
            logger.error(
                "%s %s %s failed: %s", self.service, request.method, request.url, exc
            )
            raise UpstreamError(
                f"Network failure: {exc.__class__.__name__}",
                service=self.service,
                url=str(request.url),
            ) from exc

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        access_token: str | None = None,
        cache_key: str | None = None,
        use_cache: bool = True,
    ) -> Any:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        request = self._client.build_request(
            method, url, params=params, json=json, headers=headers
        )
        resolved_url = str(request.url)

        key: str | None = None
        if use_cache:
            key = cache_key or request_cache_key(
                self.service, method, access_token, resolved_url, json
            )
            cached = await self._cache.get(key)
            if cached is not None:
                return cached

        queue = self._post_queue if method == "POST" else self._get_queue
        response = await self._send(queue, request)

        if response.status_code == 401:
            logger.warning("%s rejected the access token for %s", self.service, resolved_url)
            raise UpstreamAuthExpired(
                "Access token rejected",
                service=self.service,
                url=resolved_url,
                status_code=401,
                response_data=_safe_json(response),
            )
        if response.status_code >= 400:
            logger.error(
                "%s %s %s returned HTTP %s",
                self.service,
                method,
                resolved_url,
                response.status_code,
            )
            raise UpstreamError(
                response.reason_phrase or "Request failed",
                service=self.service,
                url=resolved_url,
                status_code=response.status_code,
                response_data=_safe_json(response),
            )

        data = _safe_json(response)
        if key is not None and data is not None:
            await self._cache.set(key, data, self._ttl_seconds)
        return data


def _safe_json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None
