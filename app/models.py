"""Pydantic models describing configuration and catalog payloads."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Literal
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, Field, ValidationError

ContentType = Literal["movie", "series", "list"]

SORT_OPTIONS = [
    "rank_asc",
    "rank_desc",
    "listed_at_asc",
    "listed_at_desc",
    "title_asc",
    "title_desc",
    "year_asc",
    "year_desc",
]


class TokenPair(BaseModel):
    """Access/refresh token pair issued by the Trakt OAuth endpoint."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    expires_in: int | None = None
    created_at: int | None = None


class MetaPreview(BaseModel):
    """Represents a single meta preview returned to Stremio."""

    id: str
    type: Literal["movie", "series"]
    name: str
    poster: str | None = None
    logo: str | None = None
    description: str | None = None
    release_info: str | None = Field(default=None, serialization_alias="releaseInfo")
    poster_shape: str = Field(default="poster", serialization_alias="posterShape")
    genres: list[str] = Field(default_factory=list)
    imdb_rating: str | None = Field(default=None, serialization_alias="imdbRating")
    runtime: str | None = None

    def to_meta(self) -> dict[str, Any]:
        """Return the Stremio-compatible dictionary for this preview."""

        payload = self.model_dump(by_alias=True, exclude_none=True)
        if not payload.get("genres"):
            payload.pop("genres", None)
        return payload


class TraktListRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str
    name: str

    @property
    def catalog_id(self) -> str:
        return f"trakt_{self.id}"


class CatalogToggles(BaseModel):
    model_config = ConfigDict(extra="ignore")

    watchlist: bool = False
    recommendations: bool = False
    trending: bool = False
    popular: bool = False


class AddonConfig(BaseModel):
    """Per-user add-on configuration carried in the URL path."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tmdb_api_key: str | None = Field(default=None, alias="tmdbApiKey")
    fanart_api_key: str | None = Field(default=None, alias="fanartApiKey")
    rpdb_api_key: str | None = Field(default=None, alias="rpdbApiKey")
    language: str = "en-US"
    trakt_username: str | None = Field(default=None, alias="traktUsername")
    watched_emoji: str | None = Field(default=None, alias="watchedEmoji")
    trakt_lists: list[TraktListRef] = Field(default_factory=list, alias="traktLists")
    toggles: CatalogToggles = Field(default_factory=CatalogToggles)

    @classmethod
    def from_segment(cls, segment: str | None) -> "AddonConfig":
        """Decode the configuration path segment.

        The segment is JSON, either URL-encoded or URL-safe base64 encoded.
        Raises ``ValueError`` when neither decoding yields a JSON object.
        """

        if not segment:
            return cls()

        payload = _decode_segment(segment)
        if not isinstance(payload, dict):
            raise ValueError("Configuration must be a JSON object")
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise ValueError(f"Invalid configuration: {exc.errors()}") from exc


def _decode_segment(segment: str) -> Any:
    text = unquote(segment).strip()
    if text.startswith("{"):
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError("Configuration is not valid JSON") from exc

    padded = text + "=" * (-len(text) % 4)
    try:
        decoded = base64.urlsafe_b64decode(padded.encode("ascii"))
        return json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeError, json.JSONDecodeError) as exc:
        raise ValueError("Configuration is neither JSON nor base64 encoded JSON") from exc
