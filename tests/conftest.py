"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` with failure injection."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.fail = False
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key: str) -> str | None:
        self.calls.append(("get", key))
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.calls.append(("set", key))
        self._check()
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def aclose(self) -> None:
        self.closed = True


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def build_settings(tmp_path) -> Callable[..., Any]:
    """Return a factory producing isolated settings objects."""

    from app.config import Settings

    def _build(**overrides: Any) -> Settings:
        base: dict[str, Any] = {
            "TRAKT_CLIENT_ID": "client-id",
            "TRAKT_CLIENT_SECRET": "client-secret",
            "TMDB_API_KEY": "tmdb-key",
            "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'traktlists.db'}",
        }
        base.update(overrides)
        return Settings(_env_file=None, **base)  # type: ignore[arg-type]

    return _build


@pytest.fixture
async def database(tmp_path):
    """Provide a freshly created SQLite database for a single test."""

    from app.database import Database

    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.create_all()
    try:
        yield db
    finally:
        await db.dispose()
