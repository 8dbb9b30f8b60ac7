"""
CSV bulk-import pipeline — turns one stored file into incidents.

Expected columns (header row is skipped):
    title, description, category_id, latitude, longitude,
    citizen_identifier, priority, status

Processing rules:
  • The file is streamed with the csv module, one row at a time. Memory
    use does not depend on file size.
  • Every row is its own transaction: incident insert (or row-error
    record) plus the job checkpoint. A retried attempt skips the rows the
    checkpoint already counts.
  • Bad rows never abort the import; they end up in error_details.
    Bytes that are not valid UTF-8 (Latin-1 exports) decode to U+FFFD
    instead of failing the file.
  • Progress goes to the shared cache every `progress_every` rows and once
    more at the end.

Row numbers are CSV record numbers with the header as 1, so the first
data row is 2.
"""

from __future__ import annotations

import asyncio
import csv
import itertools
import logging
import math
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import utcnow
from app.models.category import Category
from app.models.import_job import ImportRowError
from app.models.incident import PRIORITIES, STATUSES, Incident
from app.models.user import ROLE_CITIZEN, STATUS_ACTIVE, User
from app.schemas.imports import ImportProgress, ImportResult
from app.services.cache import Clock, ExpiringCache
from app.services.import_jobs import ImportJobRepository, ImportLease
from app.services.storage import LocalFileStorage

logger = logging.getLogger(__name__)

COLUMN_COUNT = 8


class RowValidationError(Exception):
    """A data problem in one row. Recorded, never propagated."""


class ImportSourceMissingError(Exception):
    """The stored file for an import is gone."""


# ── Cache keys ──────────────────────────────────────────────
def progress_key(import_id: str) -> str:
    return f"csv_import_progress_{import_id}"


def result_key(import_id: str) -> str:
    return f"csv_import_results_{import_id}"


async def write_progress(cache: ExpiringCache, progress: ImportProgress, ttl: float) -> None:
    await cache.set(progress_key(progress.import_id), progress.model_dump(mode="json"), ttl)


# ── Row parsing ─────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class IncidentRow:
    title: str
    description: str
    category_id: int
    latitude: float
    longitude: float
    citizen_identifier: str
    priority: str
    status: str


def iter_rows(lines: Iterable[str]) -> Iterator[tuple[int, list[str]]]:
    """
    Yield (row_number, fields) for every data row, lazily.

    `lines` can be an open file or any other iterable of text lines; it is
    consumed only as far as the caller iterates.
    """
    reader = csv.reader(lines)
    for row_number, fields in enumerate(reader, start=1):
        if row_number == 1:
            continue
        yield row_number, fields


def _parse_int(raw: str) -> int | None:
    try:
        return int(raw)
    except ValueError:
        return None


def _parse_coordinate(raw: str) -> float | None:
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def parse_row(fields: list[str]) -> IncidentRow:
    """Validate one row's fields; raises RowValidationError on the first problem."""
    if len(fields) < COLUMN_COUNT:
        raise RowValidationError("Insufficient data in row")

    title, description, category_raw, lat_raw, lng_raw, citizen, priority, status = (
        value.strip() for value in fields[:COLUMN_COUNT]
    )

    if not title:
        raise RowValidationError("Title is required")
    if not description:
        raise RowValidationError("Description is required")

    category_id = _parse_int(category_raw)
    if category_id is None:
        raise RowValidationError("Valid category_id is required")

    latitude = _parse_coordinate(lat_raw)
    if latitude is None:
        raise RowValidationError("Valid latitude is required")
    longitude = _parse_coordinate(lng_raw)
    if longitude is None:
        raise RowValidationError("Valid longitude is required")

    if not citizen:
        raise RowValidationError("Citizen identifier is required")

    if priority not in PRIORITIES:
        raise RowValidationError(f"Invalid priority. Must be: {', '.join(PRIORITIES)}")
    if status not in STATUSES:
        raise RowValidationError(f"Invalid status. Must be: {', '.join(STATUSES)}")

    return IncidentRow(
        title=title,
        description=description,
        category_id=category_id,
        latitude=latitude,
        longitude=longitude,
        citizen_identifier=citizen,
        priority=priority,
        status=status,
    )


async def find_or_create_citizen(session: AsyncSession, name: str) -> User:
    """Citizen with this name, created as a login-less placeholder if absent."""
    stmt = (
        select(User)
        .where(User.name == name, User.role == ROLE_CITIZEN)
        .order_by(User.id)
        .limit(1)
    )
    citizen = (await session.execute(stmt)).scalar_one_or_none()
    if citizen is None:
        citizen = User(name=name, role=ROLE_CITIZEN, status=STATUS_ACTIVE)
        session.add(citizen)
        await session.flush()
    return citizen


# ── Pipeline ────────────────────────────────────────────────
@dataclass(slots=True)
class _Counts:
    processed: int
    success: int
    errors: int


class ImportPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: ImportJobRepository,
        cache: ExpiringCache,
        storage: LocalFileStorage,
        *,
        progress_every: int = 1000,
        progress_ttl: float = 3600,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._jobs = jobs
        self._cache = cache
        self._storage = storage
        self._progress_every = max(1, progress_every)
        self._progress_ttl = progress_ttl
        self._clock = clock

    async def run(self, lease: ImportLease) -> ImportResult:
        """
        Process the leased import from its checkpoint to the end of the file.

        Raises ImportSourceMissingError if the file is gone, StaleAttemptError
        if the attempt loses its lease, and lets infrastructure errors
        propagate so the runner can retry.
        """
        if not self._storage.exists(lease.file_reference):
            raise ImportSourceMissingError(f"Import file {lease.file_reference} not found")

        counts = _Counts(lease.processed, lease.success, lease.errors)
        known_categories: dict[int, bool] = {}

        logger.info(
            "Import %s attempt %d started (resuming after %d rows)",
            lease.import_id,
            lease.attempt,
            lease.processed,
        )
        await self._report(lease, counts)

        path = self._storage.path(lease.file_reference)
        with path.open("r", encoding="utf-8-sig", errors="replace", newline="") as handle:
            for row_number, fields in itertools.islice(iter_rows(handle), lease.processed, None):
                await self._process_row(lease, row_number, fields, counts, known_categories)
                if counts.processed % self._progress_every == 0:
                    await self._report(lease, counts)
                await asyncio.sleep(0)

        await self._report(lease, counts)
        logger.info(
            "Import %s attempt %d processed %d rows (%d ok, %d errors)",
            lease.import_id,
            lease.attempt,
            counts.processed,
            counts.success,
            counts.errors,
        )
        return ImportResult(
            import_id=lease.import_id,
            success=counts.success,
            errors=counts.errors,
            total=counts.processed,
            error_details=await self._jobs.row_errors(lease.import_id),
        )

    async def _process_row(
        self,
        lease: ImportLease,
        row_number: int,
        fields: list[str],
        counts: _Counts,
        known_categories: dict[int, bool],
    ) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                try:
                    row = parse_row(fields)
                    if not await self._category_exists(session, row.category_id, known_categories):
                        raise RowValidationError(f"Invalid category ID: {row.category_id}")
                except RowValidationError as exc:
                    session.add(
                        ImportRowError(
                            import_id=lease.import_id,
                            row_number=row_number,
                            error=str(exc),
                            data=list(fields),
                        )
                    )
                    failed = True
                else:
                    citizen = await find_or_create_citizen(session, row.citizen_identifier)
                    session.add(
                        Incident(
                            title=row.title,
                            description=row.description,
                            category_id=row.category_id,
                            priority=row.priority,
                            status=row.status,
                            location_lat=row.latitude,
                            location_lng=row.longitude,
                            citizen_id=citizen.id,
                            assigned_agent_id=None,
                        )
                    )
                    failed = False
                await self._jobs.checkpoint(session, lease, failed=failed)

        counts.processed += 1
        if failed:
            counts.errors += 1
        else:
            counts.success += 1

    @staticmethod
    async def _category_exists(
        session: AsyncSession,
        category_id: int,
        known: dict[int, bool],
    ) -> bool:
        if category_id not in known:
            known[category_id] = await session.get(Category, category_id) is not None
        return known[category_id]

    async def _report(self, lease: ImportLease, counts: _Counts) -> None:
        progress = ImportProgress(
            import_id=lease.import_id,
            processed=counts.processed,
            success=counts.success,
            errors=counts.errors,
            attempt=lease.attempt,
            updated_at=self._clock(),
        )
        await write_progress(self._cache, progress, self._progress_ttl)
