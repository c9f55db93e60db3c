from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from csvpay.config import settings


_engine: AsyncEngine | None = None
_SessionLocal: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        # SQLite via aiosqlite by default; pool_pre_ping detects dead server connections
        _engine = create_async_engine(
            settings.db_url,
            pool_pre_ping=True,
        )
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = async_sessionmaker(
            bind=get_engine(),
            expire_on_commit=False,
        )
    return _SessionLocal


def configure_engine(db_url: str) -> AsyncEngine:
    """Rebind the module engine to another URL (used by tests and the healthcheck)."""
    global _engine, _SessionLocal
    _engine = create_async_engine(db_url, pool_pre_ping=True)
    _SessionLocal = None
    return _engine


async def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _SessionLocal = None


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    SessionLocal = get_session_maker()
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def create_all() -> None:
    """Create missing tables. Alembic remains the migration path for real deployments."""
    from csvpay.db.base import Base
    from csvpay.db import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
