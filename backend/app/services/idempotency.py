"""
Idempotency store — persisted response snapshots keyed by request key.

lookup() only ever returns live records; store() is an upsert so a client
retrying with the same key after expiry simply overwrites the stale row.
cleanup_expired() is for the maintenance sweep, never the request path.

Every backend failure surfaces as IdempotencyStoreUnavailable so the
middleware can apply its fail-request policy.
"""

from __future__ import annotations

import datetime
import hashlib
import logging
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import upsert, utcnow
from app.models.idempotency import IdempotencyRecord
from app.services.cache import Clock

logger = logging.getLogger(__name__)


class IdempotencyStoreUnavailable(Exception):
    """Raised when the idempotency table cannot be read or written."""


@dataclass(frozen=True, slots=True)
class StoredResponse:
    """What gets replayed: status, raw body bytes and media type."""

    status_code: int
    body: bytes
    content_type: str | None = None


def _sha256(value: bytes) -> str:
    return hashlib.sha256(value).hexdigest()


class IdempotencyStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def lookup(self, request_key: str) -> StoredResponse | None:
        now = self._clock()
        try:
            async with self._session_factory() as session:
                stmt = select(IdempotencyRecord).where(
                    IdempotencyRecord.request_key == request_key,
                    IdempotencyRecord.expires_at > now,
                )
                row = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise IdempotencyStoreUnavailable(str(exc)) from exc

        if row is None:
            return None
        return StoredResponse(
            status_code=row.status_code,
            body=row.response_body,
            content_type=row.content_type,
        )

    async def store(
        self,
        request_key: str,
        response: StoredResponse,
        ttl_seconds: float,
    ) -> None:
        expires_at = self._clock() + datetime.timedelta(seconds=ttl_seconds)
        try:
            async with self._session_factory() as session:
                stmt = upsert(session, IdempotencyRecord).values(
                    request_key=request_key,
                    response_hash=_sha256(response.body),
                    status_code=response.status_code,
                    content_type=response.content_type,
                    response_body=response.body,
                    expires_at=expires_at,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["request_key"],
                    set_={
                        "response_hash": stmt.excluded.response_hash,
                        "status_code": stmt.excluded.status_code,
                        "content_type": stmt.excluded.content_type,
                        "response_body": stmt.excluded.response_body,
                        "expires_at": stmt.excluded.expires_at,
                    },
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise IdempotencyStoreUnavailable(str(exc)) from exc

    async def cleanup_expired(self) -> int:
        now = self._clock()
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < now)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise IdempotencyStoreUnavailable(str(exc)) from exc

        removed = int(result.rowcount or 0)
        logger.info("Cleaned up %d expired idempotency records", removed)
        return removed
