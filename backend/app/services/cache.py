"""
Key-value expiring cache shared by the request path and the import workers.

Two drivers implement the same interface:
  • DatabaseCache — rows in `cache_entries`, shared across processes.
    Every write is a single INSERT … ON CONFLICT statement, so add() and
    increment() are atomic without an explicit lock.
  • InMemoryCache — per-process, guarded by an asyncio.Lock. Used in tests
    and single-process deployments.

Callers only ever use get / set / add / increment / expires_in / delete;
there is no read-modify-write API to misuse.

Values must be JSON-serialisable. Both drivers take a `clock` so tests can
move time forward instead of sleeping.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import datetime
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import Any

from sqlalchemy import case, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import as_utc, upsert, utcnow
from app.models.cache_entry import CacheEntry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime.datetime]


class CacheUnavailableError(Exception):
    """Raised when the cache backend cannot be reached."""


class ExpiringCache(ABC):
    """Key → JSON payload or integer counter, each with a TTL in seconds."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the live payload for key, or None."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float) -> None:
        """Store value under key, replacing whatever was there."""

    @abstractmethod
    async def add(self, key: str, value: Any, ttl: float) -> bool:
        """Store value only if key is absent or expired. True if stored."""

    @abstractmethod
    async def increment(self, key: str, ttl: float) -> int:
        """
        Atomically add 1 to the counter under key and return the new value.

        A missing or expired counter restarts at 1 with a fresh ttl; a live
        counter keeps its original expiry.
        """

    @abstractmethod
    async def expires_in(self, key: str) -> float | None:
        """Seconds until key expires, or None if it is not live."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove key. True if something was removed."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""


# ── In-memory driver ────────────────────────────────────────
class _Entry:
    __slots__ = ("value", "counter", "expires_at")

    def __init__(self, value: Any, counter: int, expires_at: datetime.datetime) -> None:
        self.value = value
        self.counter = counter
        self.expires_at = expires_at


class InMemoryCache(ExpiringCache):
    """Process-local cache; all operations hold one asyncio.Lock."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str, now: datetime.datetime) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    @staticmethod
    def _freeze(value: Any) -> Any:
        # Same contract as the database driver: JSON in, JSON out.
        return json.loads(json.dumps(value))

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._live(key, self._clock())
            return copy.deepcopy(entry.value) if entry else None

    async def set(self, key: str, value: Any, ttl: float) -> None:
        frozen = self._freeze(value)
        async with self._lock:
            now = self._clock()
            self._entries[key] = _Entry(frozen, 0, now + datetime.timedelta(seconds=ttl))

    async def add(self, key: str, value: Any, ttl: float) -> bool:
        frozen = self._freeze(value)
        async with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._entries[key] = _Entry(frozen, 0, now + datetime.timedelta(seconds=ttl))
            return True

    async def increment(self, key: str, ttl: float) -> int:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                entry = _Entry(None, 0, now + datetime.timedelta(seconds=ttl))
                self._entries[key] = entry
            entry.counter += 1
            return entry.counter

    async def expires_in(self, key: str) -> float | None:
        async with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return None
            return (entry.expires_at - now).total_seconds()

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for k in expired:
                del self._entries[k]
            return len(expired)


# ── Database driver ─────────────────────────────────────────
class DatabaseCache(ExpiringCache):
    """Cache rows in `cache_entries`; one short transaction per call."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    @contextlib.asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise CacheUnavailableError(str(exc)) from exc

    async def get(self, key: str) -> Any | None:
        now = self._clock()
        async with self._session() as session:
            stmt = select(CacheEntry.payload).where(
                CacheEntry.cache_key == key,
                CacheEntry.expires_at > now,
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    async def set(self, key: str, value: Any, ttl: float) -> None:
        expires_at = self._clock() + datetime.timedelta(seconds=ttl)
        async with self._session() as session:
            stmt = upsert(session, CacheEntry).values(
                cache_key=key,
                payload=value,
                counter=0,
                expires_at=expires_at,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["cache_key"],
                set_={
                    "payload": stmt.excluded.payload,
                    "counter": 0,
                    "expires_at": stmt.excluded.expires_at,
                },
            )
            await session.execute(stmt)
            await session.commit()

    async def add(self, key: str, value: Any, ttl: float) -> bool:
        now = self._clock()
        async with self._session() as session:
            stmt = upsert(session, CacheEntry).values(
                cache_key=key,
                payload=value,
                counter=0,
                expires_at=now + datetime.timedelta(seconds=ttl),
            )
            # Take over the key only when the existing row is dead.
            stmt = stmt.on_conflict_do_update(
                index_elements=["cache_key"],
                set_={
                    "payload": stmt.excluded.payload,
                    "counter": 0,
                    "expires_at": stmt.excluded.expires_at,
                },
                where=CacheEntry.expires_at <= now,
            ).returning(CacheEntry.cache_key)
            stored = (await session.execute(stmt)).first() is not None
            await session.commit()
            return stored

    async def increment(self, key: str, ttl: float) -> int:
        now = self._clock()
        async with self._session() as session:
            stmt = upsert(session, CacheEntry).values(
                cache_key=key,
                payload=None,
                counter=1,
                expires_at=now + datetime.timedelta(seconds=ttl),
            )
            expired = CacheEntry.expires_at <= now
            stmt = stmt.on_conflict_do_update(
                index_elements=["cache_key"],
                set_={
                    "counter": case((expired, 1), else_=CacheEntry.counter + 1),
                    "expires_at": case(
                        (expired, stmt.excluded.expires_at),
                        else_=CacheEntry.expires_at,
                    ),
                },
            ).returning(CacheEntry.counter)
            count = (await session.execute(stmt)).scalar_one()
            await session.commit()
            return int(count)

    async def expires_in(self, key: str) -> float | None:
        now = self._clock()
        async with self._session() as session:
            stmt = select(CacheEntry.expires_at).where(
                CacheEntry.cache_key == key,
                CacheEntry.expires_at > now,
            )
            expires_at = (await session.execute(stmt)).scalar_one_or_none()
        if expires_at is None:
            return None
        return (as_utc(expires_at) - now).total_seconds()

    async def delete(self, key: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(CacheEntry).where(CacheEntry.cache_key == key)
            )
            await session.commit()
            return bool(result.rowcount)

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._session() as session:
            result = await session.execute(
                delete(CacheEntry).where(CacheEntry.expires_at <= now)
            )
            await session.commit()
        removed = int(result.rowcount or 0)
        logger.info("Purged %d expired cache entries", removed)
        return removed
