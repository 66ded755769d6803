"""Database utilities for the add-on."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if self._engine.dialect.name == "sqlite":
            # History rows cascade with their credential record.
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        if "credentials" not in inspector.get_table_names():
            return

        existing_columns = {
            column["name"] for column in inspector.get_columns("credentials")
        }

        def _ensure_column(name: str, ddl: str) -> None:
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            existing_columns.add(name)

        _ensure_column(
            "last_fetched_at",
            "ALTER TABLE credentials ADD COLUMN last_fetched_at TIMESTAMP",
        )
        _ensure_column(
            "created_at",
            "ALTER TABLE credentials ADD COLUMN created_at TIMESTAMP",
        )
        _ensure_column(
            "updated_at",
            "ALTER TABLE credentials ADD COLUMN updated_at TIMESTAMP",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a session scope around a series of operations."""

        async with self.session_factory() as session:
            yield session
