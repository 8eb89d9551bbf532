"""SQLAlchemy 2.x async database setup for the SQL cache backend.

This module defines the async engine and session factory but does not
hard-code any connection credentials.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import DatabaseSettings, settings


def create_engine(config: DatabaseSettings) -> AsyncEngine:
    """Build an async engine; pool options only apply to pooled drivers."""
    options: dict = {"echo": config.echo}
    if not config.url.startswith("sqlite"):
        options.update(pool_size=config.pool_size, max_overflow=config.max_overflow, pool_pre_ping=True)
    return create_async_engine(config.url, **options)


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, expire_on_commit=False, class_=AsyncSession)


engine: AsyncEngine = create_engine(settings.db)
