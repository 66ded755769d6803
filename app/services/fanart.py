"""Movie logo lookup against Fanart.tv."""

from __future__ import annotations

import logging
from typing import Any

from .exceptions import UpstreamError
from .gateway import RequestGateway

logger = logging.getLogger(__name__)


def pick_logo(logos: list[dict[str, Any]], language: str) -> str | None:
    """Return the most liked logo in ``language``, falling back to English."""

    preferred = language.split("-")[0].lower()
    for lang in dict.fromkeys([preferred, "en"]):
        candidates = [logo for logo in logos if logo.get("lang") == lang and logo.get("url")]
        if not candidates:
            continue
        best = max(candidates, key=_likes)
        return str(best["url"]).replace("http://", "https://", 1)
    return None


def _likes(logo: dict[str, Any]) -> int:
    try:
        return int(logo.get("likes") or 0)
    except (TypeError, ValueError):
        return 0


class FanartClient:
    def __init__(self, gateway: RequestGateway):
        self._gateway = gateway

    async def get_logo(
        self, tmdb_id: int | str, language: str, api_key: str
    ) -> str | None:
        """Return an https logo URL for a movie, or ``None`` when unavailable."""

        try:
            data = await self._gateway.get(
                f"/movies/{tmdb_id}/", params={"api_key": api_key}
            )
        except UpstreamError as exc:
            logger.error("Error fetching logos from Fanart.tv for TMDB ID %s: %s", tmdb_id, exc)
            return None
        logos = data.get("hdmovielogo") if isinstance(data, dict) else None
        if not isinstance(logos, list):
            return None
        return pick_logo([logo for logo in logos if isinstance(logo, dict)], language)
