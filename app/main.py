"""Entry point for the FastAPI-powered Stremio addon."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, get_args
from urllib.parse import parse_qsl

import httpx
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, settings
from .context import ServiceContext, open_service_context
from .models import SORT_OPTIONS, AddonConfig, ContentType
from .services.cache import ResponseCache
from .services.catalog import parse_sort
from .services.exceptions import (
    CatalogRequestError,
    CredentialNotFound,
    UpstreamError,
)

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

MANIFEST_ID = "com.stremio.traktlists"
MANIFEST_VERSION = "0.3.0"
SUPPORTED_TYPES = set(get_args(ContentType))

app: FastAPI


def create_app(
    app_settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    cache: ResponseCache | None = None,
) -> FastAPI:
    resolved = app_settings or settings

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        async with open_service_context(
            resolved, cache=cache, transport=transport
        ) as context:
            fastapi_app.state.context = context
            yield

    fastapi_app = FastAPI(
        title=resolved.app_name,
        description="Trakt lists, watchlists and recommendations as Stremio catalogs",
        version=MANIFEST_VERSION,
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_context(fastapi_app: FastAPI) -> ServiceContext:
    context = getattr(fastapi_app.state, "context", None)
    if not isinstance(context, ServiceContext):
        raise RuntimeError("Service context not initialised")
    return context


def parse_config(segment: str | None) -> AddonConfig:
    try:
        return AddonConfig.from_segment(segment)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def parse_extra(extra: str | None) -> dict[str, str]:
    """Parse Stremio's ``skip=20&genre=Action`` extra path segment."""

    if not extra:
        return {}
    return {key: value for key, value in parse_qsl(extra, keep_blank_values=False)}


def _catalog_entry(
    content_type: str,
    catalog_id: str,
    name: str,
    genres: list[str] | None = None,
    *,
    sortable: bool = False,
) -> dict[str, Any]:
    extra: list[dict[str, Any]] = []
    if genres:
        extra.append({"name": "genre", "isRequired": False, "options": genres})
    extra.append({"name": "skip", "isRequired": False})
    if sortable:
        extra.append({"name": "sortBy", "isRequired": False, "options": SORT_OPTIONS})
    return {"type": content_type, "id": catalog_id, "name": name, "extra": extra}


async def build_manifest(context: ServiceContext, config: AddonConfig) -> dict[str, Any]:
    catalogs: list[dict[str, Any]] = [
        _catalog_entry("list", ref.catalog_id, ref.name, sortable=True)
        for ref in config.trakt_lists
    ]

    toggles = config.toggles
    # Only the Trakt feeds accept a genre filter.
    enabled = [
        ("watchlist", toggles.watchlist, "Watchlist", False),
        ("recommendations", toggles.recommendations, "Recommended", False),
        ("trending", toggles.trending, "Trending", True),
        ("popular", toggles.popular, "Popular", True),
    ]
    movie_genres: list[str] = []
    series_genres: list[str] = []
    if any(flag and filterable for _, flag, _, filterable in enabled):
        await context.genres.ensure_genres()
        movie_genres = await context.genres.list_genres("movie")
        series_genres = await context.genres.list_genres("series")

    for prefix, flag, label, filterable in enabled:
        if not flag:
            continue
        catalogs.append(
            _catalog_entry(
                "movie",
                f"{prefix}_movies",
                f"{label} Movies",
                movie_genres if filterable else None,
            )
        )
        catalogs.append(
            _catalog_entry(
                "series",
                f"{prefix}_series",
                f"{label} Series",
                series_genres if filterable else None,
            )
        )

    return {
        "id": MANIFEST_ID,
        "version": MANIFEST_VERSION,
        "name": context.settings.app_name,
        "description": "Dynamic catalogs based on Trakt lists and catalogs in your language.",
        "resources": ["catalog"],
        "types": ["movie", "series"],
        "catalogs": catalogs,
        "idPrefixes": ["tt"],
        "behaviorHints": {"configurable": True, "configurationRequired": False},
    }


def register_routes(fastapi_app: FastAPI) -> None:
    async def _catalog_endpoint(
        config_segment: str | None,
        content_type: str,
        catalog_id: str,
        extra: str | None = None,
    ) -> JSONResponse:
        if content_type not in SUPPORTED_TYPES:
            raise HTTPException(status_code=400, detail="Unsupported content type")
        context = get_context(fastapi_app)
        config = parse_config(config_segment)
        if not (config.tmdb_api_key or context.settings.tmdb_api_key):
            raise HTTPException(status_code=400, detail="TMDB API key is required")

        params = parse_extra(extra)
        try:
            skip = int(params.get("skip", 0))
        except ValueError:
            skip = 0
        sort_by, sort_how = parse_sort(params.get("sortBy"))

        try:
            metas = await context.catalog.build_catalog(
                catalog_id,
                content_type,
                config,
                skip=skip,
                genre=params.get("genre"),
                sort_by=sort_by,
                sort_how=sort_how,
            )
        except CatalogRequestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except CredentialNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except UpstreamError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse({"metas": [meta.to_meta() for meta in metas]})

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        context = get_context(fastapi_app)
        return {"status": "ok", "cache": context.cache.state.value}

    @fastapi_app.get("/manifest.json")
    async def manifest() -> dict[str, Any]:
        return await build_manifest(get_context(fastapi_app), AddonConfig())

    @fastapi_app.get("/{config}/manifest.json")
    async def manifest_with_config(config: str) -> dict[str, Any]:
        return await build_manifest(get_context(fastapi_app), parse_config(config))

    @fastapi_app.get("/catalog/{content_type}/{catalog_id}.json")
    async def catalog(content_type: str, catalog_id: str) -> JSONResponse:
        return await _catalog_endpoint(None, content_type, catalog_id)

    @fastapi_app.get("/catalog/{content_type}/{catalog_id}/{extra}.json")
    async def catalog_with_extra(
        content_type: str, catalog_id: str, extra: str
    ) -> JSONResponse:
        return await _catalog_endpoint(None, content_type, catalog_id, extra)

    @fastapi_app.get("/{config}/catalog/{content_type}/{catalog_id}.json")
    async def catalog_with_config(
        config: str, content_type: str, catalog_id: str
    ) -> JSONResponse:
        return await _catalog_endpoint(config, content_type, catalog_id)

    @fastapi_app.get("/{config}/catalog/{content_type}/{catalog_id}/{extra}.json")
    async def catalog_with_config_and_extra(
        config: str, content_type: str, catalog_id: str, extra: str
    ) -> JSONResponse:
        return await _catalog_endpoint(config, content_type, catalog_id, extra)

    @fastapi_app.get("/callback")
    async def trakt_oauth_callback(code: str | None = None) -> dict[str, Any]:
        if not code:
            raise HTTPException(status_code=400, detail="Authorization code is required")
        context = get_context(fastapi_app)
        try:
            username = await context.credentials.authorize(code)
        except UpstreamError as exc:
            logger.error("Error exchanging authorization code: %s", exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        synced = await context.history.sync(username, force=True)
        return {"username": username, "historySynced": synced}

    async def _list_discovery(call) -> JSONResponse:
        try:
            data = await call()
        except UpstreamError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse(data)

    @fastapi_app.get("/lists/trending")
    async def trending_lists(
        page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)
    ) -> JSONResponse:
        trakt = get_context(fastapi_app).trakt
        return await _list_discovery(
            lambda: trakt.fetch_trending_lists(page=page, limit=limit)
        )

    @fastapi_app.get("/lists/popular")
    async def popular_lists(
        page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100)
    ) -> JSONResponse:
        trakt = get_context(fastapi_app).trakt
        return await _list_discovery(
            lambda: trakt.fetch_popular_lists(page=page, limit=limit)
        )

    @fastapi_app.get("/lists/search")
    async def search_lists(
        query: str = Query(..., min_length=1),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
    ) -> JSONResponse:
        trakt = get_context(fastapi_app).trakt
        return await _list_discovery(
            lambda: trakt.search_lists(query, page=page, limit=limit)
        )

    @fastapi_app.get("/lists/{list_id}")
    async def list_details(list_id: str) -> JSONResponse:
        trakt = get_context(fastapi_app).trakt
        return await _list_discovery(lambda: trakt.fetch_list(list_id))


app = create_app()
