"""Utilities for resolving metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..utils import format_runtime
from .cache import metadata_cache_key
from .gateway import RequestGateway

logger = logging.getLogger(__name__)

POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"


def tmdb_kind(content_type: str) -> str:
    return "tv" if content_type in {"series", "show", "tv"} else "movie"


@dataclass(slots=True)
class TMDBMetadata:
    """Normalized view of a TMDB movie or TV record."""

    title: str | None
    poster: str | None
    description: str | None
    release_year: str | None
    last_air_year: str | None
    rating: str | None
    genres: list[str] = field(default_factory=list)
    runtime: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "TMDBMetadata":
        poster_path = data.get("poster_path")
        release = data.get("release_date") or data.get("first_air_date") or ""
        last_air = data.get("last_air_date") or ""
        vote_average = data.get("vote_average")
        genres = [
            str(genre["name"])
            for genre in data.get("genres") or []
            if isinstance(genre, dict) and genre.get("name")
        ]
        return cls(
            title=data.get("title") or data.get("name"),
            poster=f"{POSTER_BASE_URL}{poster_path}" if poster_path else None,
            description=data.get("overview"),
            release_year=release[:4] or None,
            last_air_year=last_air[:4] or None,
            rating=f"{float(vote_average):.1f}" if vote_average else None,
            genres=genres,
            runtime=format_runtime(data.get("runtime")),
        )


class TMDBClient:
    """Client responsible for fetching TMDB details through its gateway."""

    def __init__(self, gateway: RequestGateway):
        self._gateway = gateway

    async def get_metadata(
        self,
        tmdb_id: int | str,
        content_type: str,
        *,
        api_key: str,
        language: str = "en-US",
    ) -> TMDBMetadata:
        """Return TMDB details for ``tmdb_id``; failures raise ``UpstreamError``."""

        kind = tmdb_kind(content_type)
        data = await self._gateway.get(
            f"/{kind}/{tmdb_id}",
            params={"language": language, "api_key": api_key},
            cache_key=metadata_cache_key(tmdb_id, kind, language),
        )
        if not isinstance(data, dict):
            data = {}
        return TMDBMetadata.from_payload(data)
