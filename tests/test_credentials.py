"""Tests for credential persistence and the 401 refresh protocol."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from app.db_models import Credential
from app.models import TokenPair
from app.services.credentials import CredentialStore
from app.services.exceptions import CredentialNotFound, UpstreamAuthExpired


def expired() -> UpstreamAuthExpired:
    return UpstreamAuthExpired("Access token rejected", service="trakt", status_code=401)


class FakeTrakt:
    def __init__(self) -> None:
        self.refresh_calls: list[str] = []
        self.refresh_gate: asyncio.Event | None = None
        self.exchanged: list[str] = []

    async def exchange_code(self, code: str) -> TokenPair:
        self.exchanged.append(code)
        return TokenPair(access_token="access-1", refresh_token="refresh-1")

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        self.refresh_calls.append(refresh_token)
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        index = len(self.refresh_calls) + 1
        return TokenPair(access_token=f"access-{index}", refresh_token=f"refresh-{index}")

    async def fetch_user_profile(self, access_token: str) -> dict:
        assert access_token == "access-1"
        return {"username": "alice", "name": "Alice"}


@pytest.fixture
def trakt() -> FakeTrakt:
    return FakeTrakt()


@pytest.fixture
def store(database, trakt) -> CredentialStore:
    return CredentialStore(database.session_factory, trakt)


@pytest.mark.anyio("asyncio")
async def test_persist_is_an_idempotent_upsert(store, database) -> None:
    await store.persist("alice", "a1", "r1")
    await store.persist("alice", "a1", "r1")
    await store.persist("alice", "a2", "r2")

    async with database.session() as session:
        count = await session.scalar(select(func.count()).select_from(Credential))
    record = await store.get_credential("alice")

    assert count == 1
    assert (record.access_token, record.refresh_token) == ("a2", "r2")
    assert record.last_fetched_at is None


@pytest.mark.anyio("asyncio")
async def test_missing_user_raises_not_found(store) -> None:
    with pytest.raises(CredentialNotFound) as excinfo:
        await store.get_access_token("nobody")

    assert excinfo.value.username == "nobody"


@pytest.mark.anyio("asyncio")
async def test_authorize_stores_tokens_under_profile_username(store, trakt) -> None:
    username = await store.authorize("code-123")

    assert username == "alice"
    assert trakt.exchanged == ["code-123"]
    assert await store.get_access_token("alice") == "access-1"


@pytest.mark.anyio("asyncio")
async def test_expired_token_is_refreshed_and_retried_once(store, trakt) -> None:
    await store.persist("alice", "access-1", "refresh-1")
    seen: list[str] = []

    async def call(token: str) -> str:
        seen.append(token)
        if token == "access-1":
            raise expired()
        return "payload"

    result = await store.authenticated_call("alice", call)

    assert result == "payload"
    assert seen == ["access-1", "access-2"]
    assert trakt.refresh_calls == ["refresh-1"]
    record = await store.get_credential("alice")
    assert (record.access_token, record.refresh_token) == ("access-2", "refresh-2")


@pytest.mark.anyio("asyncio")
async def test_second_failure_surfaces_unmodified(store, trakt) -> None:
    await store.persist("alice", "access-1", "refresh-1")
    errors = [expired(), expired()]
    attempts = 0

    async def call(token: str) -> str:
        nonlocal attempts
        attempts += 1
        raise errors[attempts - 1]

    with pytest.raises(UpstreamAuthExpired) as excinfo:
        await store.authenticated_call("alice", call)

    assert excinfo.value is errors[1]
    assert attempts == 2
    assert len(trakt.refresh_calls) == 1


@pytest.mark.anyio("asyncio")
async def test_concurrent_expiries_share_one_refresh(store, trakt) -> None:
    await store.persist("alice", "access-1", "refresh-1")
    trakt.refresh_gate = asyncio.Event()
    tokens_used: list[str] = []

    async def call(token: str) -> str:
        if token == "access-1":
            raise expired()
        tokens_used.append(token)
        return token

    tasks = [
        asyncio.create_task(store.authenticated_call("alice", call)) for _ in range(3)
    ]
    for _ in range(20):
        await asyncio.sleep(0)
    trakt.refresh_gate.set()
    results = await asyncio.gather(*tasks)

    assert trakt.refresh_calls == ["refresh-1"]
    assert results == ["access-2", "access-2", "access-2"]
    assert tokens_used == ["access-2"] * 3


@pytest.mark.anyio("asyncio")
async def test_rotated_token_is_reused_without_refresh(store, trakt) -> None:
    await store.persist("alice", "access-1", "refresh-1")

    async def call(token: str) -> str:
        if token == "access-1":
            # Another worker rotates the pair while this call is in flight.
            await store.persist("alice", "access-9", "refresh-9")
            raise expired()
        return token

    assert await store.authenticated_call("alice", call) == "access-9"
    assert trakt.refresh_calls == []
