"""Async SQLAlchemy engine and session factory for the shared relational store."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ..config import DatabaseConfig
from .models import Base

logger = structlog.get_logger()


def _make_engine(url: str, echo: bool):
    if url.startswith("sqlite"):
        if url.endswith("://") or ":memory:" in url:
            # One shared connection, otherwise every session sees a fresh empty DB.
            return create_async_engine(
                url,
                echo=echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_async_engine(url, echo=echo)
    return create_async_engine(url, echo=echo, pool_size=5, max_overflow=10)


class Database:
    """Holds the engine and its session factory.

    Created once at startup and shared by every service; each unit of work
    opens its own short-lived session.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self._config = config
        self.engine = _make_engine(config.url, config.echo)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def create_all(self) -> None:
        """Create any missing tables (bootstrap and tests; migrations live elsewhere)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ready")

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("database_disposed")
