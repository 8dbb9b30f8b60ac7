"""
Async database engine, session factory, and ORM base.

Rules enforced:
  • Every DB call goes through AsyncSession.
  • Sessions are request-scoped via FastAPI's Depends(get_db_session) and
    come from the factory the app was built with (tests inject their own).
  • The declarative Base is shared across all models so Alembic can
    auto-detect schema changes from a single metadata object.
  • Upserts use the dialect's INSERT … ON CONFLICT so counters and caches
    stay atomic on both PostgreSQL and SQLite.
"""

import datetime
from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings

# ── Engine ──────────────────────────────────────────────────
# pool_pre_ping: drop stale connections before reuse
# echo: SQL logging — only in debug mode
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
)

# ── Session factory ─────────────────────────────────────────
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,  # avoid lazy-load issues after commit
)


# ── ORM Base ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """Shared declarative base for all SQLAlchemy models."""


# ── Helpers ─────────────────────────────────────────────────
def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime) -> datetime.datetime:
    """SQLite hands back naive timestamps; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


def upsert(session: AsyncSession, model):  # type: ignore[no-untyped-def]
    """Dialect-specific INSERT that supports on_conflict_do_update()."""
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


# ── Dependency ──────────────────────────────────────────────
async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a scoped async session for one request.

    The session is committed by the caller (router/service);
    this generator only guarantees cleanup on exit.
    """
    session_factory = request.app.state.services.session_factory
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
