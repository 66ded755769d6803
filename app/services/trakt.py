"""Utilities for communicating with the Trakt API."""

from __future__ import annotations

import logging
from typing import Any

from ..config import Settings
from ..models import TokenPair
from .exceptions import UpstreamError
from .gateway import RequestGateway

logger = logging.getLogger(__name__)

RECOMMENDATIONS_LIMIT = 100


def trakt_kind(content_type: str) -> str:
    """Map a Stremio content type onto the Trakt collection name."""

    if content_type == "movie":
        return "movies"
    if content_type == "series":
        return "shows"
    return content_type


def default_headers(settings: Settings) -> dict[str, str]:
    """Return the headers every Trakt request carries."""

    headers = {
        "trakt-api-version": "2",
        "User-Agent": f"{settings.app_name} (traktlists)",
    }
    if settings.trakt_client_id:
        headers["trakt-api-key"] = settings.trakt_client_id
    return headers


class TraktClient:
    """Thin wrapper around the Trakt HTTP API.

    All requests go through the Trakt gateway, which handles caching and
    rate limits. Authenticated endpoints take the access token explicitly;
    the 401 refresh protocol lives in the credential store.
    """

    def __init__(self, settings: Settings, gateway: RequestGateway):
        self._settings = settings
        self._gateway = gateway

    async def exchange_code(self, code: str) -> TokenPair:
        """Exchange a single-use OAuth authorization code for a token pair."""

        payload = {
            "code": code,
            "client_id": self._settings.trakt_client_id,
            "client_secret": self._settings.trakt_client_secret,
            "redirect_uri": self._settings.oauth_redirect_uri,
            "grant_type": "authorization_code",
        }
        data = await self._gateway.post("/oauth/token", json=payload, use_cache=False)
        return self._parse_token_pair(data)

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        payload = {
            "refresh_token": refresh_token,
            "client_id": self._settings.trakt_client_id,
            "client_secret": self._settings.trakt_client_secret,
            "redirect_uri": self._settings.oauth_redirect_uri,
            "grant_type": "refresh_token",
        }
        data = await self._gateway.post("/oauth/token", json=payload, use_cache=False)
        return self._parse_token_pair(data)

    def _parse_token_pair(self, data: Any) -> TokenPair:
        if not isinstance(data, dict) or not data.get("access_token") or not data.get("refresh_token"):
            raise UpstreamError(
                "Token response did not include both tokens",
                service=self._gateway.service,
                url="/oauth/token",
                response_data=data,
            )
        return TokenPair.model_validate(data)

    async def fetch_user_profile(self, access_token: str) -> dict[str, Any]:
        data = await self._gateway.get(
            "/users/me", access_token=access_token, use_cache=False
        )
        return data if isinstance(data, dict) else {}

    async def fetch_watched(
        self, username: str, kind: str, access_token: str
    ) -> list[dict[str, Any]]:
        """Return the user's full watched history for ``movies`` or ``shows``."""

        data = await self._gateway.get(
            f"/users/{username}/watched/{kind}",
            access_token=access_token,
            use_cache=False,
        )
        return _as_list(data)

    async def fetch_watchlist(
        self,
        username: str,
        content_type: str,
        *,
        page: int,
        limit: int,
        access_token: str,
    ) -> list[dict[str, Any]]:
        kind = trakt_kind(content_type)
        logger.debug(
            "Fetching %s watchlist for %s (page %s, limit %s)", kind, username, page, limit
        )
        data = await self._gateway.get(
            f"/users/{username}/watchlist/{kind}",
            params={"page": page, "limit": limit},
            access_token=access_token,
        )
        return _as_list(data)

    async def fetch_recommendations(
        self,
        content_type: str,
        *,
        access_token: str,
        limit: int = RECOMMENDATIONS_LIMIT,
    ) -> list[dict[str, Any]]:
        kind = trakt_kind(content_type)
        data = await self._gateway.get(
            f"/recommendations/{kind}",
            params={
                "ignore_collected": "true",
                "ignore_watchlisted": "true",
                "limit": limit,
            },
            access_token=access_token,
        )
        return _as_list(data)

    async def fetch_listing(
        self,
        content_type: str,
        list_type: str,
        *,
        page: int,
        limit: int,
        genre: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch a page of the public ``trending`` or ``popular`` feeds."""

        kind = trakt_kind(content_type)
        params: dict[str, Any] = {"page": page, "limit": limit}
        if genre:
            params["genres"] = genre
        logger.debug(
            "Fetching %s %s (page %s, limit %s, genre %s)", list_type, kind, page, limit, genre
        )
        data = await self._gateway.get(f"/{kind}/{list_type}", params=params)
        return _as_list(data)

    async def fetch_list_items(
        self,
        list_id: str,
        *,
        page: int | None = None,
        limit: int | None = None,
        access_token: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch list items; without ``page`` the whole list is returned."""

        params: dict[str, Any] | None = None
        if page is not None:
            params = {"page": page, "limit": limit or self._settings.catalog_page_size}
        data = await self._gateway.get(
            f"/lists/{list_id}/items/movies,shows",
            params=params,
            access_token=access_token,
        )
        return _as_list(data)

    async def fetch_trending_lists(
        self, *, page: int = 1, limit: int = 10
    ) -> list[dict[str, Any]]:
        data = await self._gateway.get(
            "/lists/trending", params={"page": page, "limit": limit}
        )
        return _as_list(data)

    async def fetch_popular_lists(
        self, *, page: int = 1, limit: int = 10
    ) -> list[dict[str, Any]]:
        data = await self._gateway.get(
            "/lists/popular", params={"page": page, "limit": limit}
        )
        return _as_list(data)

    async def search_lists(
        self, query: str, *, page: int = 1, limit: int = 10
    ) -> list[dict[str, Any]]:
        data = await self._gateway.get(
            "/search/list", params={"query": query, "page": page, "limit": limit}
        )
        return _as_list(data)

    async def fetch_list(self, list_id: str) -> dict[str, Any]:
        data = await self._gateway.get(f"/lists/{list_id}")
        return data if isinstance(data, dict) else {}

    async def fetch_genres(self, kind: str) -> list[dict[str, Any]]:
        """Return Trakt's genre catalogue for ``movies`` or ``shows``."""

        data = await self._gateway.get(f"/genres/{kind}")
        return _as_list(data)


def _as_list(data: Any) -> list[dict[str, Any]]:
    if not isinstance(data, list):
        return []
    return [entry for entry in data if isinstance(entry, dict)]
