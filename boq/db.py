"""SQLAlchemy 2.x async database setup.

This module builds the async engine and session factory from settings but
does not hard-code any connection credentials. Nothing connects at import
time; the engine is created on first use.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import DatabaseSettings, settings


def create_engine(cfg: DatabaseSettings) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: dict = {"echo": cfg.echo, "future": True}
    if not cfg.url.startswith("sqlite"):
        kwargs.update(pool_size=cfg.pool_size, max_overflow=cfg.max_overflow, pool_pre_ping=True)
    return create_async_engine(cfg.url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return create_engine(settings.db)


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return create_session_factory(get_engine())
