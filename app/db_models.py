"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .utils import utcnow


class Credential(Base):
    """Trakt token pair for a user, plus the last history sync time."""

    __tablename__ = "credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str] = mapped_column(Text)
    last_fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime, default=utcnow, nullable=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=True
    )

    history: Mapped[list["HistoryEntry"]] = relationship(
        back_populates="credential",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class HistoryEntry(Base):
    """A watched title mirrored from the user's Trakt history."""

    __tablename__ = "history"
    __table_args__ = (
        UniqueConstraint("username", "imdb_id", name="uq_history_username_imdb"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("credentials.username", ondelete="CASCADE"),
        index=True,
    )
    imdb_id: Mapped[str] = mapped_column(String(32))
    tmdb_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    type: Mapped[str] = mapped_column(String(8))
    watched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)

    credential: Mapped[Credential] = relationship(back_populates="history")


class Genre(Base):
    """Trakt genre names offered as catalog filters."""

    __tablename__ = "genres"
    __table_args__ = (
        UniqueConstraint("slug", "media_type", name="uq_genre_media_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(120))
    media_type: Mapped[str] = mapped_column(String(16))
