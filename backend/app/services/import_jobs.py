"""
Import job repository — every state change of an ImportJob row.

All transitions are single conditional UPDATE statements:
  • acquire()    queued|processing, lease free  → processing, attempt + 1
  • checkpoint() one row committed, only if the attempt still owns the job
  • release()    attempt failed, lease freed for the retry
  • complete()   processing → completed, only for the owning attempt
  • fail()       queued|processing → failed, only for the owning attempt

Because the attempt number is part of every WHERE clause, an attempt that
lost its lease cannot write anything, and each import gets exactly one
terminal transition however many attempts it took.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import utcnow
from app.models.import_job import (
    ACTIVE_STATUSES,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    TERMINAL_STATUSES,
    ImportJob,
    ImportRowError,
)
from app.schemas.imports import RowError
from app.services.cache import Clock

logger = logging.getLogger(__name__)


class StaleAttemptError(Exception):
    """Raised when an attempt writes after losing its lease."""


@dataclass(frozen=True, slots=True)
class ImportLease:
    """A claimed attempt plus the checkpoint it resumes from."""

    import_id: str
    file_reference: str
    requested_by: int
    attempt: int
    processed: int = 0
    success: int = 0
    errors: int = 0


@dataclass(frozen=True, slots=True)
class JobCounters:
    processed: int
    success: int
    errors: int


class ImportJobRepository:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def create(self, import_id: str, file_reference: str, requested_by: int) -> None:
        async with self._session_factory() as session:
            session.add(
                ImportJob(
                    import_id=import_id,
                    file_reference=file_reference,
                    requested_by=requested_by,
                    status=STATUS_QUEUED,
                )
            )
            await session.commit()

    async def get(self, import_id: str) -> ImportJob | None:
        async with self._session_factory() as session:
            stmt = select(ImportJob).where(ImportJob.import_id == import_id)
            return (await session.execute(stmt)).scalar_one_or_none()

    async def active_import_ids(self) -> list[str]:
        async with self._session_factory() as session:
            stmt = (
                select(ImportJob.import_id)
                .where(ImportJob.status.in_(ACTIVE_STATUSES))
                .order_by(ImportJob.id)
            )
            return list((await session.execute(stmt)).scalars())

    # ── Lease ───────────────────────────────────────────────
    async def acquire(self, import_id: str, lease_seconds: float) -> ImportLease | None:
        """Claim the next attempt, or None if finished or held elsewhere."""
        now = self._clock()
        stmt = (
            update(ImportJob)
            .where(
                ImportJob.import_id == import_id,
                ImportJob.status.in_(ACTIVE_STATUSES),
                or_(
                    ImportJob.lease_expires_at.is_(None),
                    ImportJob.lease_expires_at <= now,
                ),
            )
            .values(
                status=STATUS_PROCESSING,
                attempt=ImportJob.attempt + 1,
                lease_expires_at=now + datetime.timedelta(seconds=lease_seconds),
            )
            .returning(
                ImportJob.file_reference,
                ImportJob.requested_by,
                ImportJob.attempt,
                ImportJob.processed,
                ImportJob.success,
                ImportJob.errors,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()

        if row is None:
            return None
        return ImportLease(
            import_id=import_id,
            file_reference=row.file_reference,
            requested_by=row.requested_by,
            attempt=row.attempt,
            processed=row.processed,
            success=row.success,
            errors=row.errors,
        )

    async def checkpoint(self, session: AsyncSession, lease: ImportLease, *, failed: bool) -> None:
        """Count one row inside the caller's transaction."""
        stmt = (
            update(ImportJob)
            .where(
                ImportJob.import_id == lease.import_id,
                ImportJob.attempt == lease.attempt,
                ImportJob.status == STATUS_PROCESSING,
            )
            .values(
                processed=ImportJob.processed + 1,
                success=ImportJob.success + (0 if failed else 1),
                errors=ImportJob.errors + (1 if failed else 0),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            raise StaleAttemptError(
                f"Import {lease.import_id} attempt {lease.attempt} no longer owns the job"
            )

    async def release(self, lease: ImportLease, error: str) -> None:
        """Give the lease back after a failed attempt so it can be retried."""
        stmt = (
            update(ImportJob)
            .where(
                ImportJob.import_id == lease.import_id,
                ImportJob.attempt == lease.attempt,
                ImportJob.status == STATUS_PROCESSING,
            )
            .values(lease_expires_at=None, last_error=error)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    # ── Terminal transitions ────────────────────────────────
    async def complete(self, lease: ImportLease) -> bool:
        return await self._finish(lease, STATUS_COMPLETED, None) is not None

    async def fail(self, lease: ImportLease, error: str) -> JobCounters | None:
        return await self._finish(lease, STATUS_FAILED, error)

    async def _finish(self, lease: ImportLease, status: str, error: str | None) -> JobCounters | None:
        stmt = (
            update(ImportJob)
            .where(
                ImportJob.import_id == lease.import_id,
                ImportJob.attempt == lease.attempt,
                ImportJob.status.in_(ACTIVE_STATUSES),
            )
            .values(
                status=status,
                lease_expires_at=None,
                last_error=error,
                finished_at=self._clock(),
            )
            .returning(ImportJob.processed, ImportJob.success, ImportJob.errors)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()

        if row is None:
            logger.warning(
                "Import %s attempt %d lost the race to a terminal state",
                lease.import_id,
                lease.attempt,
            )
            return None
        return JobCounters(processed=row.processed, success=row.success, errors=row.errors)

    # ── Row errors ──────────────────────────────────────────
    async def row_errors(self, import_id: str) -> list[RowError]:
        async with self._session_factory() as session:
            stmt = (
                select(ImportRowError)
                .where(ImportRowError.import_id == import_id)
                .order_by(ImportRowError.row_number)
            )
            rows = (await session.execute(stmt)).scalars()
            return [RowError(row=r.row_number, error=r.error, data=list(r.data)) for r in rows]

    # ── Housekeeping ────────────────────────────────────────
    async def purge_finished_before(self, cutoff: datetime.datetime) -> int:
        """Delete terminal jobs (and their row errors) finished before cutoff."""
        finished = select(ImportJob.import_id).where(
            ImportJob.status.in_(TERMINAL_STATUSES),
            ImportJob.finished_at < cutoff,
        )
        async with self._session_factory() as session:
            await session.execute(
                delete(ImportRowError).where(ImportRowError.import_id.in_(finished))
            )
            result = await session.execute(
                delete(ImportJob).where(
                    ImportJob.status.in_(TERMINAL_STATUSES),
                    ImportJob.finished_at < cutoff,
                )
            )
            await session.commit()
        return int(result.rowcount or 0)
