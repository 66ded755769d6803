"""Wiring of the long-lived service objects shared by every request."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from .config import Settings
from .database import Database
from .services.cache import ResponseCache
from .services.catalog import CatalogAggregator
from .services.credentials import CredentialStore
from .services.fanart import FanartClient
from .services.gateway import RequestGateway, RequestQueue
from .services.genres import GenreStore
from .services.history import HistorySynchronizer
from .services.rpdb import RPDBClient
from .services.tmdb import TMDBClient
from .services.trakt import TraktClient, default_headers

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceContext:
    """Everything a request handler needs, built once per process."""

    settings: Settings
    database: Database
    cache: ResponseCache
    trakt: TraktClient
    credentials: CredentialStore
    history: HistorySynchronizer
    genres: GenreStore
    catalog: CatalogAggregator


def build_gateways(
    settings: Settings,
    cache: ResponseCache,
    *,
    trakt_http: httpx.AsyncClient,
    tmdb_http: httpx.AsyncClient,
    fanart_http: httpx.AsyncClient,
    rpdb_http: httpx.AsyncClient,
) -> dict[str, RequestGateway]:
    """Create one gateway per upstream, each with its own queues."""

    def queue(name: str) -> RequestQueue:
        return RequestQueue(name, settings.queue_limits(name))

    return {
        "trakt": RequestGateway(
            "trakt",
            trakt_http,
            cache,
            ttl_seconds=settings.trakt_cache_seconds,
            get_queue=queue("trakt_get"),
            post_queue=queue("trakt_post"),
        ),
        "tmdb": RequestGateway(
            "tmdb",
            tmdb_http,
            cache,
            ttl_seconds=settings.tmdb_cache_seconds,
            get_queue=queue("tmdb"),
        ),
        "fanart": RequestGateway(
            "fanart",
            fanart_http,
            cache,
            ttl_seconds=settings.tmdb_cache_seconds,
            get_queue=queue("fanart"),
        ),
        "rpdb": RequestGateway(
            "rpdb",
            rpdb_http,
            cache,
            ttl_seconds=settings.tmdb_cache_seconds,
            get_queue=queue("rpdb"),
        ),
    }


@asynccontextmanager
async def open_service_context(
    settings: Settings,
    *,
    cache: ResponseCache | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[ServiceContext]:
    """Open every client and pool, yield the context, then close them.

    ``cache`` and ``transport`` let callers substitute the Redis client and
    the network layer.
    """

    async with AsyncExitStack() as exit_stack:

        def http_client(**kwargs) -> httpx.AsyncClient:
            if transport is not None:
                kwargs["transport"] = transport
            return httpx.AsyncClient(**kwargs)

        trakt_http = await exit_stack.enter_async_context(
            http_client(
                base_url=str(settings.trakt_api_url),
                headers=default_headers(settings),
            )
        )
        tmdb_http = await exit_stack.enter_async_context(
            http_client(base_url=str(settings.tmdb_api_url))
        )
        fanart_http = await exit_stack.enter_async_context(
            http_client(base_url=str(settings.fanart_api_url))
        )
        rpdb_http = await exit_stack.enter_async_context(
            http_client(follow_redirects=True)
        )

        if cache is None:
            cache = ResponseCache.from_url(
                settings.redis_url, recovery_seconds=settings.cache_recovery_seconds
            )
        exit_stack.push_async_callback(cache.close)

        database = Database(settings.database_url)
        exit_stack.push_async_callback(database.dispose)
        await database.create_all()

        gateways = build_gateways(
            settings,
            cache,
            trakt_http=trakt_http,
            tmdb_http=tmdb_http,
            fanart_http=fanart_http,
            rpdb_http=rpdb_http,
        )
        trakt = TraktClient(settings, gateways["trakt"])
        credentials = CredentialStore(database.session_factory, trakt)
        history = HistorySynchronizer(
            database.session_factory,
            credentials,
            trakt,
            interval=settings.history_fetch_interval,
        )
        genres = GenreStore(database.session_factory, trakt)
        catalog = CatalogAggregator(
            settings,
            trakt,
            credentials,
            history,
            TMDBClient(gateways["tmdb"]),
            FanartClient(gateways["fanart"]),
            RPDBClient(gateways["rpdb"], str(settings.rpdb_api_url)),
            genres,
        )
        logger.info("Service context ready (cache %s)", cache.state.value)
        yield ServiceContext(
            settings=settings,
            database=database,
            cache=cache,
            trakt=trakt,
            credentials=credentials,
            history=history,
            genres=genres,
            catalog=catalog,
        )
