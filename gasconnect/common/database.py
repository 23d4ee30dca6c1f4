"""Async SQLAlchemy plumbing for the GasConnect services.

Engines and session factories are kept per database URL for the lifetime of
the process so the API app, the reservation reaper and tests opening the same
URL share one connection pool.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import ServiceSettings

SQLITE_LOCK_TIMEOUT_SECONDS = 30


@dataclass
class _PoolRegistry:
    engines: dict[str, AsyncEngine] = field(default_factory=dict)
    factories: dict[str, async_sessionmaker[AsyncSession]] = field(default_factory=dict)

    def engine(self, database_url: str, options: dict[str, Any]) -> AsyncEngine:
        engine = self.engines.get(database_url)
        if engine is None:
            engine = create_async_engine(database_url, **_engine_options(database_url, options))
            self.engines[database_url] = engine
        return engine

    def factory(self, database_url: str) -> async_sessionmaker[AsyncSession]:
        factory = self.factories.get(database_url)
        if factory is None:
            factory = async_sessionmaker(self.engine(database_url, {}), expire_on_commit=False)
            self.factories[database_url] = factory
        return factory

    async def dispose(self) -> None:
        engines = list(self.engines.values())
        self.engines.clear()
        self.factories.clear()
        for engine in engines:
            await engine.dispose()


_REGISTRY = _PoolRegistry()


def _engine_options(database_url: str, options: dict[str, Any]) -> dict[str, Any]:
    merged = dict(options)
    if make_url(database_url).get_backend_name() == "sqlite":
        # Writers queue on the file lock.
        connect_args = dict(merged.get("connect_args", {}))
        connect_args.setdefault("timeout", SQLITE_LOCK_TIMEOUT_SECONDS)
        merged["connect_args"] = connect_args
    else:
        merged.setdefault("pool_pre_ping", True)
    return merged


def create_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Return the process-wide engine for ``database_url``, creating it on first use."""

    return _REGISTRY.engine(database_url, kwargs)


def get_session_factory(database_url: str) -> async_sessionmaker[AsyncSession]:
    return _REGISTRY.factory(database_url)


@asynccontextmanager
async def lifespan_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Yield a session for one unit of work.

    The transaction commits when the block exits normally and rolls back when
    it raises; the exception is re-raised either way.
    """

    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def create_schema(database_url: str, metadata: MetaData) -> None:
    """Create missing tables for ``metadata`` on the engine for ``database_url``."""

    async with create_engine(database_url).begin() as conn:
        await conn.run_sync(metadata.create_all)


def resolve_database_url(settings: ServiceSettings, fallback: str) -> str:
    return settings.database_url or fallback


async def dispose_engines() -> None:
    """Close every pooled connection and forget the cached engines."""

    await _REGISTRY.dispose()
