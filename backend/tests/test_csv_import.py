import itertools

import pytest
from sqlalchemy import func, select

from app.models.import_job import ImportRowError
from app.models.incident import Incident
from app.models.user import User
from app.services.cache import CacheUnavailableError, InMemoryCache
from app.services.csv_import import (
    ImportPipeline,
    ImportSourceMissingError,
    RowValidationError,
    iter_rows,
    parse_row,
    progress_key,
)
from app.services.import_jobs import ImportJobRepository, StaleAttemptError

from conftest import CSV_HEADER, write_csv

GOOD = "Broken light,Lamp out since Monday,2,40.41,-3.70,Ana Garcia,medium,new"

# Ten data rows, two of them invalid (row 5: unknown category, row 9: bad priority).
TEN_ROWS = [
    GOOD,
    "Pothole,Deep hole,1,40.42,-3.71,Ana Garcia,high,new",
    "Graffiti,On the school wall,3,40.43,-3.72,Luis Perez,low,in_progress",
    "Fallen tree,Blocking the path,999,40.44,-3.73,Luis Perez,high,new",
    GOOD,
    "Overflowing bin,Not collected,3,40.45,-3.74,Marta Ruiz,medium,resolved",
    "Noise,Construction at night,1,40.46,-3.75,Marta Ruiz,low,closed",
    "Leak,Water on the street,1,40.47,-3.76,Ana Garcia,urgent,new",
    GOOD,
    "Sign down,Stop sign knocked over,1,40.48,-3.77,Luis Perez,high,new",
]

# The same ten rows with unknown categories on rows 3 and 7 only.
CATEGORY_ERRORS_AT_3_AND_7 = [
    GOOD,
    "Pothole,Deep hole,999,40.42,-3.71,Ana Garcia,high,new",
    "Graffiti,On the school wall,3,40.43,-3.72,Luis Perez,low,in_progress",
    GOOD,
    "Overflowing bin,Not collected,3,40.45,-3.74,Marta Ruiz,medium,resolved",
    "Noise,Construction at night,404,40.46,-3.75,Marta Ruiz,low,closed",
    "Leak,Water on the street,1,40.47,-3.76,Ana Garcia,high,new",
    GOOD,
    "Sign down,Stop sign knocked over,1,40.48,-3.77,Luis Perez,high,new",
    GOOD,
]


class RecordingCache(InMemoryCache):
    def __init__(self, fail_on_write: int | None = None) -> None:
        super().__init__()
        self.writes: list[dict] = []
        self._fail_on_write = fail_on_write

    async def set(self, key, value, ttl):
        if key.startswith("csv_import_progress_"):
            if self._fail_on_write is not None and len(self.writes) + 1 == self._fail_on_write:
                raise CacheUnavailableError("cache went away")
            self.writes.append(value)
        await super().set(key, value, ttl)


@pytest.fixture()
def jobs(session_factory, clock):
    return ImportJobRepository(session_factory, clock=clock)


def _pipeline(session_factory, jobs, cache, storage, every=3):
    return ImportPipeline(session_factory, jobs, cache, storage, progress_every=every)


async def _leased_job(jobs, file_reference, import_id="import_test"):
    await jobs.create(import_id, file_reference, requested_by=1)
    return await jobs.acquire(import_id, lease_seconds=600)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


# ── Row parsing ─────────────────────────────────────────────
def test_parse_row_accepts_valid_row():
    row = parse_row(GOOD.split(","))
    assert row.title == "Broken light"
    assert row.category_id == 2
    assert row.latitude == pytest.approx(40.41)
    assert row.citizen_identifier == "Ana Garcia"
    assert (row.priority, row.status) == ("medium", "new")


@pytest.mark.parametrize(
    ("fields", "message"),
    [
        (["Only", "three", "cols"], "Insufficient data in row"),
        ([], "Insufficient data in row"),
        (["", "d", "1", "1", "1", "c", "low", "new"], "Title is required"),
        (["t", "  ", "1", "1", "1", "c", "low", "new"], "Description is required"),
        (["t", "d", "abc", "1", "1", "c", "low", "new"], "Valid category_id is required"),
        (["t", "d", "1", "north", "1", "c", "low", "new"], "Valid latitude is required"),
        (["t", "d", "1", "1", "nan", "c", "low", "new"], "Valid longitude is required"),
        (["t", "d", "1", "1", "1", "", "low", "new"], "Citizen identifier is required"),
        (["t", "d", "1", "1", "1", "c", "urgent", "new"], "Invalid priority. Must be: low, medium, high"),
        (
            ["t", "d", "1", "1", "1", "c", "low", "open"],
            "Invalid status. Must be: new, in_progress, resolved, closed",
        ),
    ],
)
def test_parse_row_rejects(fields, message):
    with pytest.raises(RowValidationError) as exc_info:
        parse_row(fields)
    assert str(exc_info.value) == message


def test_iter_rows_is_lazy_and_skips_header():
    consumed = []

    def lines():
        yield "title,description\n"
        for n in range(1_000_000):
            consumed.append(n)
            yield f"row {n},desc\n"

    first_two = list(itertools.islice(iter_rows(lines()), 2))

    assert first_two == [(2, ["row 0", "desc"]), (3, ["row 1", "desc"])]
    assert len(consumed) <= 3


# ── Pipeline ────────────────────────────────────────────────
async def test_partial_failure_reports_every_row(session_factory, jobs, storage):
    cache = InMemoryCache()
    lease = await _leased_job(jobs, write_csv(storage, TEN_ROWS))

    result = await _pipeline(session_factory, jobs, cache, storage).run(lease)

    assert (result.success, result.errors, result.total) == (8, 2, 10)
    assert [(e.row, e.error) for e in result.error_details] == [
        (5, "Invalid category ID: 999"),
        (9, "Invalid priority. Must be: low, medium, high"),
    ]
    assert result.error_details[0].data[0] == "Fallen tree"
    assert await _count(session_factory, Incident) == 8


async def test_unknown_categories_on_rows_3_and_7(session_factory, jobs, storage):
    lease = await _leased_job(jobs, write_csv(storage, CATEGORY_ERRORS_AT_3_AND_7))

    result = await _pipeline(session_factory, jobs, InMemoryCache(), storage).run(lease)

    assert (result.success, result.errors, result.total) == (8, 2, 10)
    assert [(e.row, e.error) for e in result.error_details] == [
        (3, "Invalid category ID: 999"),
        (7, "Invalid category ID: 404"),
    ]


async def test_citizens_are_found_or_created_by_name(session_factory, jobs, storage):
    lease = await _leased_job(jobs, write_csv(storage, TEN_ROWS))
    await _pipeline(session_factory, jobs, InMemoryCache(), storage).run(lease)

    async with session_factory() as session:
        names = (
            await session.execute(select(User.name).where(User.role == "citizen").order_by(User.name))
        ).scalars().all()
        imported = (
            await session.execute(select(Incident).where(Incident.title == "Graffiti"))
        ).scalar_one()

    assert names == ["Ana Garcia", "Luis Perez", "Marta Ruiz"]
    assert imported.assigned_agent_id is None
    assert imported.status == "in_progress"


async def test_blank_line_counts_as_error(session_factory, jobs, storage):
    lease = await _leased_job(jobs, write_csv(storage, [GOOD, "", GOOD]))
    result = await _pipeline(session_factory, jobs, InMemoryCache(), storage).run(lease)

    assert (result.success, result.errors, result.total) == (2, 1, 3)
    assert result.error_details[0].error == "Insufficient data in row"
    assert result.error_details[0].row == 3


async def test_progress_is_monotonic_and_final(session_factory, jobs, storage):
    cache = RecordingCache()
    lease = await _leased_job(jobs, write_csv(storage, TEN_ROWS))

    await _pipeline(session_factory, jobs, cache, storage, every=3).run(lease)

    processed = [w["processed"] for w in cache.writes]
    assert processed == sorted(processed)
    assert processed[-1] == 10
    assert {3, 6, 9} <= set(processed)
    final = await cache.get(progress_key(lease.import_id))
    assert final["status"] == "processing"
    assert (final["success"], final["errors"]) == (8, 2)


async def test_retry_resumes_from_checkpoint(session_factory, jobs, storage):
    lease = await _leased_job(jobs, write_csv(storage, TEN_ROWS))

    # The start write and the one after row 3 succeed; the one after row 6 fails.
    failing = RecordingCache(fail_on_write=3)
    with pytest.raises(CacheUnavailableError):
        await _pipeline(session_factory, jobs, failing, storage, every=3).run(lease)
    assert await _count(session_factory, Incident) == 5

    await jobs.release(lease, "cache went away")
    retry = await jobs.acquire(lease.import_id, lease_seconds=600)
    assert (retry.attempt, retry.processed) == (2, 6)

    cache = RecordingCache()
    result = await _pipeline(session_factory, jobs, cache, storage, every=3).run(retry)

    assert (result.success, result.errors, result.total) == (8, 2, 10)
    assert await _count(session_factory, Incident) == 8
    assert await _count(session_factory, ImportRowError) == 2
    assert cache.writes[0]["processed"] == 6


async def test_stale_attempt_cannot_write(session_factory, jobs, storage):
    stale = await _leased_job(jobs, write_csv(storage, TEN_ROWS))
    await jobs.release(stale, "handed over")
    current = await jobs.acquire(stale.import_id, lease_seconds=600)
    assert current.attempt == stale.attempt + 1

    with pytest.raises(StaleAttemptError):
        await _pipeline(session_factory, jobs, InMemoryCache(), storage).run(stale)

    assert await _count(session_factory, Incident) == 0


async def test_missing_file_raises(session_factory, jobs, storage):
    lease = await _leased_job(jobs, "imports/gone.csv")
    with pytest.raises(ImportSourceMissingError):
        await _pipeline(session_factory, jobs, InMemoryCache(), storage).run(lease)


async def test_latin1_bytes_do_not_fail_the_import(session_factory, jobs, storage):
    key = "imports/latin1.csv"
    path = storage.path(key)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(
        CSV_HEADER.encode("utf-8")
        + (GOOD + "\n").encode("utf-8")
        + "Café sign,Letters missing,2,40.41,-3.70,José Ruiz,low,new\n".encode("latin-1")
        + (GOOD + "\n").encode("utf-8")
    )
    lease = await _leased_job(jobs, key)

    result = await _pipeline(session_factory, jobs, InMemoryCache(), storage).run(lease)

    assert (result.success, result.errors, result.total) == (3, 0, 3)
    async with session_factory() as session:
        titles = (await session.execute(select(Incident.title).order_by(Incident.id))).scalars().all()
    assert titles[1] == "Caf\ufffd sign"
