"""
medqueue/db/session.py — Async SQLAlchemy engine and session factory.

Uses asyncpg driver for maximum Postgres throughput. The queue store opens
its own short transactions from AsyncSessionLocal, one per operation.
"""
from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from medqueue.config import Settings, get_settings


def build_engine(settings: Settings) -> AsyncEngine:
    url = settings.async_database_url
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,       # Detect stale connections before use
        echo=settings.log_level == "DEBUG",
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = build_engine(get_settings())
AsyncSessionLocal = build_sessionmaker(engine)
