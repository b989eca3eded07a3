from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool


class Base(DeclarativeBase):
    """Declarative base for webhook event and API token models."""


async_engine: AsyncEngine | None = None
async_session: async_sessionmaker[AsyncSession] | None = None


def make_engine(db_url: str) -> AsyncEngine:
    if db_url.startswith("sqlite"):
        # SQLite connections are cheap; a fresh one per checkout keeps them
        # independent of the event loop that opened them.
        return create_async_engine(db_url, echo=False, future=True, poolclass=NullPool)
    return create_async_engine(
        db_url,
        echo=False,
        future=True,
        pool_pre_ping=True,  # Test connections before using them
        pool_recycle=3600,   # Recycle connections after 1 hour
        pool_size=10,
        max_overflow=20,
    )


def ensure_sqlite_dir(db_url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def init_engine(db_url: str) -> AsyncEngine:
    """Initialize async engine and session factory for the integration DB."""
    global async_engine, async_session
    ensure_sqlite_dir(db_url)
    async_engine = make_engine(db_url)
    async_session = make_session_factory(async_engine)
    return async_engine


async def create_all(engine: AsyncEngine | None = None) -> None:
    """Create missing tables. Alembic is preferred for schema migrations."""
    engine = engine or async_engine
    if engine is None:
        raise RuntimeError("Engine is not initialized. Call init_engine() first.")
    # Register models on the metadata before creating tables
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    if async_session is None:
        raise RuntimeError("DB is not initialized. Call init_engine() first.")
    async with async_session() as session:
        yield session


@asynccontextmanager
async def open_database(db_url: str, auto_create: bool = True) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Initialize the engine for one command run and dispose it afterwards."""
    engine = init_engine(db_url)
    try:
        if auto_create:
            await create_all(engine)
        yield make_session_factory(engine)
    finally:
        await engine.dispose()
