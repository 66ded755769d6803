"""Tests for the watch-history synchronizer."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.db_models import Credential, HistoryEntry
from app.models import MetaPreview, TokenPair
from app.services.credentials import CredentialStore
from app.services.exceptions import UpstreamAuthExpired
from app.services.history import HistorySynchronizer, normalize_watched

NOW = datetime(2024, 6, 1, 12, 0, 0)


def movie(imdb: str | None, tmdb: int, title: str, watched: str) -> dict:
    return {
        "plays": 1,
        "last_watched_at": watched,
        "movie": {"title": title, "ids": {"imdb": imdb, "tmdb": tmdb, "trakt": tmdb}},
    }


def show(imdb: str, tmdb: int, title: str, watched: str) -> dict:
    return {
        "plays": 3,
        "last_watched_at": watched,
        "show": {"title": title, "ids": {"imdb": imdb, "tmdb": tmdb}},
    }


class FakeTrakt:
    def __init__(self, movies: list[dict], shows: list[dict]) -> None:
        self.movies = movies
        self.shows = shows
        self.watched_calls: list[tuple[str, str, str]] = []
        self.expired_tokens: set[str] = set()

    async def fetch_watched(self, username: str, kind: str, access_token: str) -> list[dict]:
        self.watched_calls.append((username, kind, access_token))
        if access_token in self.expired_tokens:
            raise UpstreamAuthExpired("expired", service="trakt", status_code=401)
        return self.movies if kind == "movies" else self.shows

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        return TokenPair(access_token="fresh-access", refresh_token="fresh-refresh")


class FailingSynchronizer(HistorySynchronizer):
    """Synchronizer whose Nth upsert raises."""

    fail_on = 5

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.upserts = 0

    async def _upsert_entry(self, session, username, row) -> None:
        self.upserts += 1
        if self.upserts == self.fail_on:
            raise RuntimeError("disk full")
        await super()._upsert_entry(session, username, row)


EIGHT_MOVIES = [
    movie(f"tt000000{index}", index, f"Movie {index}", "2024-05-01T10:00:00.000Z")
    for index in range(1, 9)
]


async def seed_user(store: CredentialStore, last_fetched_at: datetime | None = None) -> None:
    await store.persist("alice", "access-1", "refresh-1")
    if last_fetched_at is not None:
        async with store._session_factory() as session:
            async with session.begin():
                record = (
                    await session.execute(select(Credential).where(Credential.username == "alice"))
                ).scalar_one()
                record.last_fetched_at = last_fetched_at


async def history_rows(database) -> list[tuple]:
    async with database.session() as session:
        result = await session.execute(
            select(
                HistoryEntry.username,
                HistoryEntry.imdb_id,
                HistoryEntry.tmdb_id,
                HistoryEntry.type,
                HistoryEntry.watched_at,
                HistoryEntry.title,
            ).order_by(HistoryEntry.imdb_id)
        )
        return [tuple(row) for row in result.all()]


def build(database, trakt, cls=HistorySynchronizer, interval=timedelta(hours=24)):
    store = CredentialStore(database.session_factory, trakt)
    synchronizer = cls(
        database.session_factory, store, trakt, interval=interval, clock=lambda: NOW
    )
    return store, synchronizer


def test_normalize_skips_missing_imdb_and_keeps_latest_watch() -> None:
    rows = normalize_watched(
        [
            movie("tt1", 1, "Older", "2020-01-01T00:00:00.000Z"),
            movie(None, 2, "No imdb", "2024-01-01T00:00:00.000Z"),
            movie("tt1", 1, "Newer", "2023-01-01T00:00:00.000Z"),
            movie("tt1", 1, "Oldest", "2019-01-01T00:00:00.000Z"),
        ],
        "movie",
    )

    assert list(rows) == ["tt1"]
    assert rows["tt1"]["title"] == "Newer"
    assert rows["tt1"]["watched_at"] == datetime(2023, 1, 1)


@pytest.mark.anyio("asyncio")
async def test_sync_is_idempotent(database) -> None:
    trakt = FakeTrakt(
        [movie("tt0111161", 278, "The Shawshank Redemption", "2024-05-01T20:00:00.000Z")],
        [show("tt0903747", 1396, "Breaking Bad", "2024-04-02T21:30:00.000Z")],
    )
    store, synchronizer = build(database, trakt)
    await seed_user(store)

    assert await synchronizer.sync("alice", force=True) is True
    first = await history_rows(database)
    assert await synchronizer.sync("alice", force=True) is True
    second = await history_rows(database)

    assert first == second
    assert first == [
        ("alice", "tt0111161", 278, "movie", datetime(2024, 5, 1, 20, 0), "The Shawshank Redemption"),
        ("alice", "tt0903747", 1396, "show", datetime(2024, 4, 2, 21, 30), "Breaking Bad"),
    ]
    assert await store.get_last_fetched_at("alice") == NOW


@pytest.mark.anyio("asyncio")
async def test_upsert_updates_existing_rows(database) -> None:
    trakt = FakeTrakt([movie("tt1", 1, "Old title", "2024-01-01T00:00:00.000Z")], [])
    store, synchronizer = build(database, trakt)
    await seed_user(store)
    await synchronizer.sync("alice", force=True)

    trakt.movies = [movie("tt1", 11, "New title", "2024-02-01T00:00:00.000Z")]
    await synchronizer.sync("alice", force=True)

    assert await history_rows(database) == [
        ("alice", "tt1", 11, "movie", datetime(2024, 2, 1), "New title")
    ]


@pytest.mark.anyio("asyncio")
async def test_cooldown_skips_fetch_but_still_annotates(database) -> None:
    trakt = FakeTrakt([movie("tt1", 1, "Seen", "2024-01-01T00:00:00.000Z")], [])
    store, synchronizer = build(database, trakt)
    await seed_user(store)
    await synchronizer.sync("alice", force=True)
    trakt.watched_calls.clear()

    items = [
        MetaPreview(id="tt1", type="movie", name="Seen"),
        MetaPreview(id="tt2", type="movie", name="Unseen"),
    ]
    annotated = await synchronizer.sync_and_annotate("alice", "movie", items, "✔️")

    assert trakt.watched_calls == []
    assert [item.name for item in annotated] == ["✔️ Seen", "Unseen"]
    assert items[0].name == "Seen"


@pytest.mark.anyio("asyncio")
async def test_sync_runs_once_cooldown_elapsed(database) -> None:
    trakt = FakeTrakt([], [])
    store, synchronizer = build(database, trakt, interval=timedelta(hours=6))
    await seed_user(store, last_fetched_at=NOW - timedelta(hours=6))

    assert await synchronizer.is_due("alice") is True
    assert await synchronizer.sync("alice") is True
    assert {call[1] for call in trakt.watched_calls} == {"movies", "shows"}


@pytest.mark.anyio("asyncio")
async def test_failed_batch_rolls_back_everything(database) -> None:
    trakt = FakeTrakt([movie("tt0000001", 1, "Original", "2023-01-01T00:00:00.000Z")], [])
    store, synchronizer = build(database, trakt, cls=FailingSynchronizer)
    synchronizer.fail_on = 99
    await seed_user(store)
    await synchronizer.sync("alice", force=True)
    before_rows = await history_rows(database)
    before_stamp = await store.get_last_fetched_at("alice")

    trakt.movies = EIGHT_MOVIES
    synchronizer.upserts = 0
    synchronizer.fail_on = 5
    later = NOW + timedelta(days=2)
    synchronizer._clock = lambda: later

    assert await synchronizer.sync("alice") is False
    assert synchronizer.upserts == 5
    assert await history_rows(database) == before_rows
    assert await store.get_last_fetched_at("alice") == before_stamp


@pytest.mark.anyio("asyncio")
async def test_expired_token_is_refreshed_during_sync(database) -> None:
    trakt = FakeTrakt([movie("tt1", 1, "Seen", "2024-01-01T00:00:00.000Z")], [])
    trakt.expired_tokens.add("access-1")
    store, synchronizer = build(database, trakt)
    await seed_user(store)

    assert await synchronizer.sync("alice") is True
    assert await store.get_access_token("alice") == "fresh-access"
    assert ("alice", "movies", "fresh-access") in trakt.watched_calls


@pytest.mark.anyio("asyncio")
async def test_sync_without_credentials_is_a_no_op(database) -> None:
    trakt = FakeTrakt([], [])
    _, synchronizer = build(database, trakt)

    assert await synchronizer.sync("ghost") is False
    assert trakt.watched_calls == []


@pytest.mark.anyio("asyncio")
async def test_annotate_filters_by_media_type(database) -> None:
    trakt = FakeTrakt(
        [movie("tt1", 1, "A film", "2024-01-01T00:00:00.000Z")],
        [show("tt2", 2, "A show", "2024-01-01T00:00:00.000Z")],
    )
    store, synchronizer = build(database, trakt)
    await seed_user(store)
    await synchronizer.sync("alice", force=True)

    items = [
        MetaPreview(id="tt1", type="movie", name="A film"),
        MetaPreview(id="tt2", type="series", name="A show"),
    ]

    as_series = await synchronizer.annotate("alice", "series", items, "👁")
    as_list = await synchronizer.annotate("alice", "list", items, "👁")

    assert [item.name for item in as_series] == ["A film", "👁 A show"]
    assert [item.name for item in as_list] == ["👁 A film", "👁 A show"]


class GatedTrakt(FakeTrakt):
    """Holds watched-history responses until the gate opens."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()

    async def fetch_watched(self, username: str, kind: str, access_token: str) -> list[dict]:
        await self.gate.wait()
        return await super().fetch_watched(username, kind, access_token)


@pytest.mark.anyio("asyncio")
async def test_concurrent_syncs_share_one_fetch(database) -> None:
    trakt = GatedTrakt(EIGHT_MOVIES[:2], [])
    store, synchronizer = build(database, trakt)
    await seed_user(store)

    first = asyncio.create_task(synchronizer.sync("alice"))
    second = asyncio.create_task(synchronizer.sync("alice"))
    await asyncio.sleep(0)
    trakt.gate.set()

    assert await asyncio.gather(first, second) == [True, True]
    assert sorted(kind for _, kind, _ in trakt.watched_calls) == ["movies", "shows"]
    assert len(await history_rows(database)) == 2

    # The guard is released once the run finishes.
    assert await synchronizer.sync("alice", force=True) is True
    assert len(trakt.watched_calls) == 4
