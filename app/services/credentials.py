"""Persistence and refresh handling for Trakt OAuth credentials."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import Credential
from ..models import TokenPair
from ..utils import utcnow
from .exceptions import CredentialNotFound, PersistenceError, UpstreamAuthExpired
from .trakt import TraktClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CredentialStore:
    """Single source of truth for a user's Trakt session.

    ``authenticated_call`` is the only place that implements the
    401 -> refresh -> retry-once protocol. Refreshes are single-flight per
    username: concurrent callers that hit an expired token share one
    in-flight refresh instead of racing to rotate the pair.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        trakt: TraktClient,
    ) -> None:
        self._session_factory = session_factory
        self._trakt = trakt
        self._inflight: dict[str, asyncio.Task[str]] = {}

    async def exchange_code(self, code: str) -> TokenPair:
        return await self._trakt.exchange_code(code)

    async def refresh(self, refresh_token: str) -> TokenPair:
        return await self._trakt.refresh_token(refresh_token)

    async def authorize(self, code: str) -> str:
        """Exchange ``code``, resolve the username and store the token pair."""

        tokens = await self.exchange_code(code)
        profile = await self._trakt.fetch_user_profile(tokens.access_token)
        username = str(profile.get("username") or "").strip()
        if not username:
            raise PersistenceError("Trakt profile did not include a username")
        await self.persist(username, tokens.access_token, tokens.refresh_token)
        return username

    async def persist(self, username: str, access_token: str, refresh_token: str) -> None:
        """Insert or replace the token pair stored for ``username``."""

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(Credential).where(Credential.username == username)
                    )
                    record = result.scalar_one_or_none()
                    if record is None:
                        session.add(
                            Credential(
                                username=username,
                                access_token=access_token,
                                refresh_token=refresh_token,
                            )
                        )
                    else:
                        record.access_token = access_token
                        record.refresh_token = refresh_token
                        record.updated_at = utcnow()
        except SQLAlchemyError as exc:
            logger.error("Failed to store credentials for %s: %s", username, exc)
            raise PersistenceError(f"Could not store credentials for {username}") from exc
        logger.info("Stored Trakt credentials for %s", username)

    async def get_credential(self, username: str) -> Credential:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Credential).where(Credential.username == username)
                )
                record = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load credentials for {username}") from exc
        if record is None:
            raise CredentialNotFound(username)
        return record

    async def get_access_token(self, username: str) -> str:
        record = await self.get_credential(username)
        return record.access_token

    async def get_last_fetched_at(self, username: str) -> datetime | None:
        record = await self.get_credential(username)
        return record.last_fetched_at

    async def authenticated_call(
        self,
        username: str,
        call: Callable[[str], Awaitable[T]],
    ) -> T:
        """Run ``call`` with the user's access token, refreshing once on 401.

        A failure on the retry propagates unchanged.
        """

        access_token = await self.get_access_token(username)
        try:
            return await call(access_token)
        except UpstreamAuthExpired:
            logger.warning("Token expired for user %s, refreshing token", username)

        fresh_token = await self._refresh_single_flight(username, access_token)
        return await call(fresh_token)

    async def _refresh_single_flight(self, username: str, stale_token: str) -> str:
        task = self._inflight.get(username)
        if task is None:
            task = asyncio.create_task(self._refresh_user(username, stale_token))
            self._inflight[username] = task

            def _forget(done: asyncio.Task[str], *, key: str = username) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _refresh_user(self, username: str, stale_token: str) -> str:
        record = await self.get_credential(username)
        if record.access_token != stale_token:
            # Another request already rotated the pair.
            logger.debug("Token for %s already refreshed, reusing it", username)
            return record.access_token

        tokens = await self.refresh(record.refresh_token)
        await self.persist(username, tokens.access_token, tokens.refresh_token)
        logger.info("Refreshed Trakt token for %s", username)
        return tokens.access_token
