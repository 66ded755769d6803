"""Mirror of each user's Trakt watched history used to annotate catalogs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import Credential, HistoryEntry
from ..models import MetaPreview
from ..utils import parse_timestamp, utcnow
from .credentials import CredentialStore
from .exceptions import CredentialNotFound
from .trakt import TraktClient

logger = logging.getLogger(__name__)


def history_type(content_type: str) -> str | None:
    """Return the stored history type for a catalog content type."""

    if content_type in {"movie", "movies"}:
        return "movie"
    if content_type in {"series", "show", "shows"}:
        return "show"
    return None


def normalize_watched(
    entries: Iterable[dict[str, Any]], media_type: str
) -> dict[str, dict[str, Any]]:
    """Collapse Trakt watched entries into one row per IMDb id.

    Entries without an IMDb id are skipped. When an id appears more than
    once the most recent ``last_watched_at`` wins.
    """

    rows: dict[str, dict[str, Any]] = {}
    for entry in entries:
        media = entry.get("movie") if media_type == "movie" else entry.get("show")
        if not isinstance(media, dict):
            continue
        ids = media.get("ids") or {}
        imdb_id = ids.get("imdb")
        if not imdb_id:
            continue
        watched_at = parse_timestamp(entry.get("last_watched_at"))
        current = rows.get(imdb_id)
        if current is not None and _is_newer(current["watched_at"], watched_at):
            continue
        tmdb_id = ids.get("tmdb")
        rows[imdb_id] = {
            "imdb_id": imdb_id,
            "tmdb_id": tmdb_id if isinstance(tmdb_id, int) else None,
            "type": media_type,
            "watched_at": watched_at,
            "title": media.get("title"),
        }
    return rows


def _is_newer(existing: datetime | None, candidate: datetime | None) -> bool:
    if candidate is None:
        return True
    if existing is None:
        return False
    return existing >= candidate


class HistorySynchronizer:
    """Keeps the local history table in step with Trakt on a cooldown."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        credentials: CredentialStore,
        trakt: TraktClient,
        *,
        interval: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._credentials = credentials
        self._trakt = trakt
        self._interval = interval
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[bool]] = {}

    async def is_due(self, username: str) -> bool:
        last_fetched_at = await self._credentials.get_last_fetched_at(username)
        if last_fetched_at is None:
            return True
        return self._clock() - last_fetched_at >= self._interval

    async def sync(self, username: str, *, force: bool = False) -> bool:
        """Pull the user's watched history and upsert it in one transaction.

        Returns ``True`` when new data was committed. Any failure is logged
        and leaves both the history rows and ``last_fetched_at`` untouched so
        the next request retries. Concurrent calls for the same user share
        one run.
        """

        task = self._inflight.get(username)
        if task is None:
            task = asyncio.create_task(self._sync_once(username, force))
            self._inflight[username] = task

            def _forget(done: asyncio.Task[bool], *, key: str = username) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _sync_once(self, username: str, force: bool) -> bool:
        try:
            if not force and not await self.is_due(username):
                logger.debug("History for %s is fresh, skipping sync", username)
                return False

            movies, shows = await asyncio.gather(
                self._credentials.authenticated_call(
                    username,
                    lambda token: self._trakt.fetch_watched(username, "movies", token),
                ),
                self._credentials.authenticated_call(
                    username,
                    lambda token: self._trakt.fetch_watched(username, "shows", token),
                ),
            )

            rows = normalize_watched(movies, "movie")
            rows.update(normalize_watched(shows, "show"))
            await self._store(username, list(rows.values()))
        except CredentialNotFound:
            logger.warning("No Trakt credentials stored for %s, skipping history sync", username)
            return False
        except Exception:
            logger.exception("Error fetching Trakt history for user %s", username)
            return False

        logger.info("History saved for user %s (%d titles)", username, len(rows))
        return True

    async def _store(self, username: str, rows: Sequence[dict[str, Any]]) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                for row in rows:
                    await self._upsert_entry(session, username, row)
                credential = (
                    await session.execute(
                        select(Credential).where(Credential.username == username)
                    )
                ).scalar_one_or_none()
                if credential is None:
                    raise CredentialNotFound(username)
                credential.last_fetched_at = self._clock()

    async def _upsert_entry(
        self, session: AsyncSession, username: str, row: dict[str, Any]
    ) -> None:
        result = await session.execute(
            select(HistoryEntry).where(
                HistoryEntry.username == username,
                HistoryEntry.imdb_id == row["imdb_id"],
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            session.add(HistoryEntry(username=username, **row))
            return
        entry.tmdb_id = row["tmdb_id"]
        entry.type = row["type"]
        entry.watched_at = row["watched_at"]
        entry.title = row["title"]

    async def watched_ids(self, username: str, content_type: str) -> set[str]:
        stmt = select(HistoryEntry.imdb_id).where(HistoryEntry.username == username)
        media_type = history_type(content_type)
        if media_type is not None:
            stmt = stmt.where(HistoryEntry.type == media_type)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            ids = {value for value in result.scalars() if value}
        logger.debug(
            "Loaded %d watched ids for %s (%s)", len(ids), username, media_type or "all"
        )
        return ids

    async def annotate(
        self,
        username: str,
        content_type: str,
        items: list[MetaPreview],
        marker: str,
    ) -> list[MetaPreview]:
        """Prefix ``marker`` to the name of every item the user has watched."""

        watched = await self.watched_ids(username, content_type)
        if not watched:
            return items
        return [
            item.model_copy(update={"name": f"{marker} {item.name}"})
            if item.id in watched
            else item
            for item in items
        ]

    async def sync_and_annotate(
        self,
        username: str,
        content_type: str,
        items: list[MetaPreview],
        marker: str,
    ) -> list[MetaPreview]:
        await self.sync(username)
        return await self.annotate(username, content_type, items, marker)
