"""Trakt genre catalogue stored locally for manifest filters."""

from __future__ import annotations

import logging
import re

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import Genre
from .exceptions import PersistenceError, UpstreamError
from .trakt import TraktClient

logger = logging.getLogger(__name__)

_MEDIA_TYPES = {"movies": "movie", "shows": "series"}
_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def genre_slug(name: str) -> str:
    """Derive a Trakt-style slug, e.g. ``Science Fiction`` to ``science-fiction``."""

    return _SLUG_SEPARATORS.sub("-", name.strip().lower()).strip("-")


class GenreStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        trakt: TraktClient,
    ) -> None:
        self._session_factory = session_factory
        self._trakt = trakt

    async def has_genres(self) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(Genre.id).limit(1))
            return result.first() is not None

    async def ensure_genres(self) -> bool:
        """Populate the genre table from Trakt when it is empty.

        Returns ``True`` when genres are available afterwards. Upstream
        failures are logged and leave the table empty so a later call retries.
        """

        if await self.has_genres():
            return True

        fetched: dict[str, list[dict]] = {}
        try:
            for kind, media_type in _MEDIA_TYPES.items():
                fetched[media_type] = await self._trakt.fetch_genres(kind)
        except UpstreamError as exc:
            logger.error("Error fetching genres from Trakt: %s", exc)
            return False

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    for media_type, genres in fetched.items():
                        seen: set[str] = set()
                        for genre in genres:
                            slug = genre.get("slug")
                            name = genre.get("name")
                            if not slug or not name or slug in seen:
                                continue
                            seen.add(slug)
                            session.add(Genre(slug=slug, name=name, media_type=media_type))
        except IntegrityError:
            logger.debug("Genres were stored by a concurrent request")
            return True
        except SQLAlchemyError as exc:
            logger.error("Error storing genres: %s", exc)
            raise PersistenceError("Could not store Trakt genres") from exc

        logger.info("Genres fetched and stored")
        return True

    async def list_genres(self, media_type: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Genre.name)
                .where(Genre.media_type == media_type)
                .order_by(Genre.name)
            )
            return list(result.scalars())

    async def slug_for(self, genre: str, media_type: str) -> str:
        """Return the Trakt slug for a genre name offered in the manifest.

        Values that match no stored genre are slugified as Trakt would.
        """

        async with self._session_factory() as session:
            result = await session.execute(
                select(Genre.slug)
                .where(
                    Genre.media_type == media_type,
                    or_(func.lower(Genre.name) == genre.lower(), Genre.slug == genre),
                )
                .limit(1)
            )
            slug = result.scalar_one_or_none()
        return slug or genre_slug(genre)
