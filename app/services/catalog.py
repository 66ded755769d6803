"""Catalog aggregation: fetch raw Trakt pages, enrich and annotate them."""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime
from typing import Any, Callable, Sequence

from ..config import Settings
from ..models import AddonConfig, MetaPreview
from ..utils import parse_timestamp
from .credentials import CredentialStore
from .exceptions import CatalogRequestError
from .fanart import FanartClient
from .genres import GenreStore, genre_slug
from .history import HistorySynchronizer
from .rpdb import RPDBClient
from .tmdb import TMDBClient
from .trakt import TraktClient

logger = logging.getLogger(__name__)


class CatalogSource(str, enum.Enum):
    WATCHLIST = "watchlist"
    RECOMMENDATIONS = "recommendations"
    TRENDING = "trending"
    POPULAR = "popular"
    LIST = "list"


_PREFIXED_SOURCES = {
    CatalogSource.WATCHLIST,
    CatalogSource.RECOMMENDATIONS,
    CatalogSource.TRENDING,
    CatalogSource.POPULAR,
}


def parse_catalog_id(catalog_id: str) -> tuple[CatalogSource, str | None]:
    """Return the source kind and, for arbitrary lists, the Trakt list id."""

    for source in _PREFIXED_SOURCES:
        if catalog_id in {f"{source.value}_movies", f"{source.value}_series"}:
            return source, None
    list_id = catalog_id[len("trakt_"):] if catalog_id.startswith("trakt_") else catalog_id
    return CatalogSource.LIST, list_id


def parse_sort(value: str | None) -> tuple[str | None, str]:
    """Split a ``<field>_<asc|desc>`` option into its parts."""

    if not value:
        return None, "asc"
    field, _, direction = value.rpartition("_")
    if direction in {"asc", "desc"} and field:
        return field, direction
    return value, "asc"


def _media(item: dict[str, Any]) -> dict[str, Any]:
    media = item.get("movie") or item.get("show") or {}
    return media if isinstance(media, dict) else {}


def _rank_key(item: dict[str, Any]) -> float:
    rank = item.get("rank")
    return float(rank) if isinstance(rank, (int, float)) else 0.0


def _listed_at_key(item: dict[str, Any]) -> datetime:
    return parse_timestamp(item.get("listed_at")) or datetime.min


def _title_key(item: dict[str, Any]) -> str:
    return str(_media(item).get("title") or "").lower()


def _year_key(item: dict[str, Any]) -> int:
    year = _media(item).get("year")
    return year if isinstance(year, int) else 0


SORT_KEYS: dict[str, Callable[[dict[str, Any]], Any]] = {
    "rank": _rank_key,
    "listed_at": _listed_at_key,
    "title": _title_key,
    "year": _year_key,
}


def sort_items(
    items: Sequence[dict[str, Any]], sort_by: str | None, sort_how: str = "asc"
) -> list[dict[str, Any]]:
    """Stable local sort over rank, listed_at, title or year.

    Unknown fields leave the input order untouched.
    """

    key = SORT_KEYS.get(sort_by or "")
    if key is None:
        return list(items)
    return sorted(items, key=key, reverse=sort_how == "desc")


def window(items: Sequence[Any], skip: int, limit: int) -> list[Any]:
    skip = max(skip, 0)
    return list(items[skip : skip + max(limit, 0)])


class CatalogAggregator:
    """Builds Stremio catalog pages from Trakt sources."""

    def __init__(
        self,
        settings: Settings,
        trakt: TraktClient,
        credentials: CredentialStore,
        history: HistorySynchronizer,
        tmdb: TMDBClient,
        fanart: FanartClient,
        rpdb: RPDBClient,
        genres: GenreStore | None = None,
    ) -> None:
        self._settings = settings
        self._trakt = trakt
        self._credentials = credentials
        self._history = history
        self._tmdb = tmdb
        self._fanart = fanart
        self._rpdb = rpdb
        self._genres = genres

    async def fetch_page(
        self,
        source: CatalogSource,
        content_type: str,
        page: int,
        limit: int,
        *,
        sort_by: str | None = None,
        sort_how: str = "asc",
        list_id: str | None = None,
        username: str | None = None,
        genre: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return the raw Trakt items for one catalog page."""

        offset = (page - 1) * limit

        if source in {CatalogSource.WATCHLIST, CatalogSource.RECOMMENDATIONS}:
            if not username:
                raise CatalogRequestError(f"Trakt username is required for {source.value} catalogs")

        if source is CatalogSource.WATCHLIST:
            return await self._credentials.authenticated_call(
                username,
                lambda token: self._trakt.fetch_watchlist(
                    username, content_type, page=page, limit=limit, access_token=token
                ),
            )

        if source is CatalogSource.RECOMMENDATIONS:
            items = await self._credentials.authenticated_call(
                username,
                lambda token: self._trakt.fetch_recommendations(
                    content_type, access_token=token
                ),
            )
            return window(items, offset, limit)

        if source in {CatalogSource.TRENDING, CatalogSource.POPULAR}:
            return await self._trakt.fetch_listing(
                content_type, source.value, page=page, limit=limit, genre=genre
            )

        if not list_id:
            raise CatalogRequestError("A Trakt list id is required")
        if sort_by:
            items = await self._trakt.fetch_list_items(list_id)
            return window(sort_items(items, sort_by, sort_how), offset, limit)
        return await self._trakt.fetch_list_items(list_id, page=page, limit=limit)

    async def enrich_items(
        self,
        items: Sequence[dict[str, Any]],
        content_type: str,
        options: AddonConfig,
    ) -> list[MetaPreview]:
        """Enrich every item concurrently, keeping input order.

        Items whose enrichment raises are logged and left out of the result.
        """

        results = await asyncio.gather(
            *(self._enrich_one(item, content_type, options) for item in items),
            return_exceptions=True,
        )
        metas: list[MetaPreview] = []
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                media = _media(item) or item
                ids = media.get("ids") or {}
                logger.error(
                    "Error enriching %r (TMDB %s, IMDb %s): %s",
                    media.get("title"),
                    ids.get("tmdb"),
                    ids.get("imdb"),
                    result,
                )
                continue
            if result is not None:
                metas.append(result)
        return metas

    async def _enrich_one(
        self,
        item: dict[str, Any],
        content_type: str,
        options: AddonConfig,
    ) -> MetaPreview | None:
        if content_type == "movie":
            media, meta_type = item.get("movie") or item, "movie"
        elif content_type == "series":
            media, meta_type = item.get("show") or item, "series"
        elif item.get("movie"):
            media, meta_type = item["movie"], "movie"
        elif item.get("show"):
            media, meta_type = item["show"], "series"
        else:
            return None

        ids = media.get("ids") or {}
        tmdb_id = ids.get("tmdb")
        imdb_id = ids.get("imdb")
        if not tmdb_id or not imdb_id:
            logger.debug("Skipping %r without TMDB/IMDb ids", media.get("title"))
            return None

        api_key = options.tmdb_api_key or self._settings.tmdb_api_key
        details = await self._tmdb.get_metadata(
            tmdb_id, meta_type, api_key=api_key, language=options.language
        )

        poster = details.poster
        if options.rpdb_api_key:
            poster = (
                await self._rpdb.get_poster(
                    meta_type, tmdb_id, options.language, options.rpdb_api_key
                )
                or poster
            )

        logo = None
        if options.fanart_api_key and meta_type == "movie":
            logo = await self._fanart.get_logo(
                tmdb_id, options.language, options.fanart_api_key
            )

        if content_type == "list":
            name = media.get("title") or details.title
        else:
            name = details.title or media.get("title")

        return MetaPreview(
            id=str(imdb_id),
            type=meta_type,
            name=name or str(imdb_id),
            poster=poster,
            logo=logo,
            description=details.description,
            release_info=details.release_year,
            genres=details.genres,
            imdb_rating=details.rating,
            runtime=details.runtime,
        )

    async def _genre_slug(self, genre: str, content_type: str) -> str:
        if self._genres is None:
            return genre_slug(genre)
        return await self._genres.slug_for(genre, content_type)

    async def build_catalog(
        self,
        catalog_id: str,
        content_type: str,
        options: AddonConfig,
        *,
        skip: int = 0,
        genre: str | None = None,
        sort_by: str | None = None,
        sort_how: str = "asc",
    ) -> list[MetaPreview]:
        """Fetch, enrich and annotate one catalog page."""

        source, list_id = parse_catalog_id(catalog_id)
        if genre and source in {CatalogSource.TRENDING, CatalogSource.POPULAR}:
            genre = await self._genre_slug(genre, content_type)
        limit = self._settings.catalog_page_size
        page = max(skip, 0) // limit + 1
        logger.debug(
            "Building catalog %s (%s) skip=%s page=%s sort=%s_%s",
            catalog_id,
            content_type,
            skip,
            page,
            sort_by,
            sort_how,
        )

        raw_items = await self.fetch_page(
            source,
            content_type,
            page,
            limit,
            sort_by=sort_by,
            sort_how=sort_how,
            list_id=list_id,
            username=options.trakt_username,
            genre=genre,
        )
        metas = await self.enrich_items(raw_items, content_type, options)

        if options.trakt_username:
            marker = options.watched_emoji or self._settings.watched_marker
            metas = await self._history.sync_and_annotate(
                options.trakt_username, content_type, metas, marker
            )
        return metas
