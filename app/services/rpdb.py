"""Rating poster lookup against RatingPosterDB."""

from __future__ import annotations

import logging

from .exceptions import UpstreamError
from .gateway import RequestGateway

logger = logging.getLogger(__name__)

# Free tiers cannot request localized posters.
_UNLOCALIZED_TIERS = {"t0", "t1"}


class RPDBClient:
    def __init__(self, gateway: RequestGateway, base_url: str):
        self._gateway = gateway
        self._base_url = base_url.rstrip("/")

    def poster_url(self, content_type: str, tmdb_id: int | str, language: str, api_key: str) -> str:
        kind = "series" if content_type in {"series", "show", "tv"} else "movie"
        url = (
            f"{self._base_url}/{api_key}/tmdb/poster-default/"
            f"{kind}-{tmdb_id}.jpg?fallback=true"
        )
        tier = api_key.split("-")[0]
        if tier not in _UNLOCALIZED_TIERS:
            url = f"{url}&lang={language.split('-')[0]}"
        return url

    async def get_poster(
        self, content_type: str, tmdb_id: int | str, language: str, api_key: str
    ) -> str | None:
        """Return the poster URL when RPDB has one, else ``None``."""

        url = self.poster_url(content_type, tmdb_id, language, api_key)
        try:
            exists = await self._gateway.head(url)
        except UpstreamError as exc:
            logger.warning("RPDB poster lookup failed for %s-%s: %s", content_type, tmdb_id, exc)
            return None
        if not exists:
            logger.debug("RPDB poster not found for %s-%s", content_type, tmdb_id)
            return None
        return url
