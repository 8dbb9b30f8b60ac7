"""
Background runner for CSV imports.

An asyncio.Queue of import ids feeds a fixed pool of worker tasks. The
queue is only a wake-up signal; the source of truth is the import_jobs
table, which is why jobs left queued or processing by a previous process
are simply re-enqueued on start().

Per import:
  1. acquire() a lease (a new attempt number) or skip if another worker
     holds it or the job is already finished.
  2. Run the pipeline under RetryPolicy.timeout_seconds.
  3. Outcome:
       • success              → completed, result written to the cache
       • job deadline hit     → failed, no retry
       • file missing         → failed, no retry
       • any other exception  → lease released, retried after a backoff
                                until max_attempts, then failed
       • lease lost           → nothing; the owner of the new lease decides

If the database itself is down while the runner records one of these
outcomes, the import is put back on the queue once its lease has run
out, so the next attempt resumes from the last checkpoint.

The uploaded file is deleted on every terminal path.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from app.core.database import utcnow
from app.models.import_job import STATUS_COMPLETED, STATUS_FAILED
from app.schemas.imports import ImportProgress, ImportResult
from app.services.cache import CacheUnavailableError, Clock, ExpiringCache
from app.services.csv_import import (
    ImportPipeline,
    ImportSourceMissingError,
    result_key,
    write_progress,
)
from app.services.import_jobs import ImportJobRepository, ImportLease, StaleAttemptError
from app.services.storage import LocalFileStorage

logger = logging.getLogger(__name__)

# Extra lease time past the timeout so a slow cancellation is still ours.
LEASE_GRACE_SECONDS = 60.0


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout_seconds: float = 1800.0
    backoff_seconds: float = 5.0


class ImportJobRunner:
    def __init__(
        self,
        pipeline: ImportPipeline,
        jobs: ImportJobRepository,
        cache: ExpiringCache,
        storage: LocalFileStorage,
        *,
        policy: RetryPolicy | None = None,
        workers: int = 1,
        progress_ttl: float = 3600,
        result_ttl: float = 3600,
        clock: Clock = utcnow,
    ) -> None:
        self._pipeline = pipeline
        self._jobs = jobs
        self._cache = cache
        self._storage = storage
        self._policy = policy or RetryPolicy()
        self._lease_seconds = self._policy.timeout_seconds + LEASE_GRACE_SECONDS
        self._worker_count = max(1, workers)
        self._progress_ttl = progress_ttl
        self._result_ttl = result_ttl
        self._clock = clock
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._delayed: set[asyncio.Task[None]] = set()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    # ── Lifecycle ───────────────────────────────────────────
    async def start(self, *, recover: bool = True) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"import-worker-{n}")
            for n in range(self._worker_count)
        ]
        logger.info("Started %d import worker(s)", self._worker_count)

        if recover:
            pending = await self._jobs.active_import_ids()
            for import_id in pending:
                self._queue.put_nowait(import_id)
            if pending:
                logger.info("Re-enqueued %d unfinished import(s)", len(pending))

    async def stop(self) -> None:
        tasks = [*self._workers, *self._delayed]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        logger.info("Import workers stopped")

    async def join(self) -> None:
        """Wait until every submitted import has been handled."""
        await self._queue.join()

    # ── Submission ──────────────────────────────────────────
    async def enqueue(self, file_reference: str, requested_by: int) -> str:
        """Persist a new import job for a stored file and queue it."""
        import_id = f"import_{uuid.uuid4().hex}"
        await self._jobs.create(import_id, file_reference, requested_by)
        try:
            await write_progress(
                self._cache,
                ImportProgress(import_id=import_id, updated_at=self._clock()),
                self._progress_ttl,
            )
        except CacheUnavailableError:
            logger.warning("Could not write initial progress for import %s", import_id)
        self.submit(import_id)
        logger.info("Queued import %s for user %d", import_id, requested_by)
        return import_id

    def submit(self, import_id: str) -> None:
        self._queue.put_nowait(import_id)

    def submit_later(self, import_id: str, delay: float) -> None:
        """Queue an import again after `delay` seconds."""
        task = asyncio.create_task(self._resubmit(import_id, delay), name=f"import-retry-{import_id}")
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _resubmit(self, import_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self.submit(import_id)

    @property
    def pending_retries(self) -> int:
        return len(self._delayed)

    async def _worker(self, number: int) -> None:
        while True:
            import_id = await self._queue.get()
            try:
                await self.run_job(import_id)
            except Exception:
                logger.exception("Import worker %d crashed on import %s", number, import_id)
            finally:
                self._queue.task_done()

    # ── One import ──────────────────────────────────────────
    async def run_job(self, import_id: str) -> str | None:
        """
        Drive one import to a terminal state.

        Returns the terminal status reached by this call, or None when the
        job was not ours to finish (or was handed back for a later retry).
        """
        while True:
            try:
                lease = await self._jobs.acquire(import_id, self._lease_seconds)
            except SQLAlchemyError:
                logger.error(
                    "Could not lease import %s; trying again in %gs",
                    import_id,
                    self._policy.backoff_seconds,
                    exc_info=True,
                )
                self.submit_later(import_id, self._policy.backoff_seconds)
                return None
            if lease is None:
                logger.info("Import %s is finished or leased elsewhere; skipping", import_id)
                return None
            if lease.attempt > self._policy.max_attempts:
                return await self._fail(
                    lease, f"Gave up after {self._policy.max_attempts} attempts"
                )

            deadline = asyncio.timeout(self._policy.timeout_seconds)
            try:
                async with deadline:
                    result = await self._pipeline.run(lease)
            except ImportSourceMissingError as exc:
                return await self._fail(lease, str(exc))
            except StaleAttemptError:
                logger.warning(
                    "Import %s attempt %d lost its lease; abandoning",
                    import_id,
                    lease.attempt,
                )
                return None
            except asyncio.CancelledError:
                await self._release(lease, "Worker shut down")
                raise
            except Exception as exc:
                if deadline.expired():
                    message = f"Import timed out after {self._policy.timeout_seconds:g} seconds"
                    return await self._fail(lease, message)

                logger.warning(
                    "Import %s attempt %d failed: %s",
                    import_id,
                    lease.attempt,
                    exc,
                    exc_info=True,
                )
                if lease.attempt >= self._policy.max_attempts:
                    return await self._fail(lease, str(exc) or type(exc).__name__)
                if not await self._release(lease, str(exc) or type(exc).__name__):
                    # Still leased to this attempt; the lease has to run out first.
                    self.submit_later(import_id, self._lease_seconds)
                    return None
                await asyncio.sleep(self._policy.backoff_seconds)
                continue

            return await self._complete(lease, result)

    async def _release(self, lease: ImportLease, error: str) -> bool:
        try:
            await self._jobs.release(lease, error)
        except SQLAlchemyError:
            logger.error(
                "Could not release import %s attempt %d",
                lease.import_id,
                lease.attempt,
                exc_info=True,
            )
            return False
        return True

    def _retry_after_lease(self, lease: ImportLease, outcome: str) -> None:
        logger.error(
            "Could not mark import %s attempt %d %s; retrying in %gs",
            lease.import_id,
            lease.attempt,
            outcome,
            self._lease_seconds,
            exc_info=True,
        )
        self.submit_later(lease.import_id, self._lease_seconds)

    async def _complete(self, lease: ImportLease, result: ImportResult) -> str | None:
        try:
            completed = await self._jobs.complete(lease)
        except SQLAlchemyError:
            # Every row is checkpointed, so the retry finds nothing left to do.
            self._retry_after_lease(lease, STATUS_COMPLETED)
            return None
        if not completed:
            return None
        try:
            await self._cache.set(
                result_key(lease.import_id),
                result.model_dump(mode="json"),
                self._result_ttl,
            )
        except CacheUnavailableError:
            logger.error(
                "Import %s attempt %d completed but its result could not be cached",
                lease.import_id,
                lease.attempt,
            )
        self._delete_source(lease)
        logger.info(
            "Import %s completed: %d ok, %d errors, %d total",
            lease.import_id,
            result.success,
            result.errors,
            result.total,
        )
        return STATUS_COMPLETED

    async def _fail(self, lease: ImportLease, error: str) -> str | None:
        try:
            counters = await self._jobs.fail(lease, error)
        except SQLAlchemyError:
            self._retry_after_lease(lease, STATUS_FAILED)
            return None
        self._delete_source(lease)
        if counters is None:
            return None

        logger.error(
            "Import %s failed permanently on attempt %d: %s",
            lease.import_id,
            lease.attempt,
            error,
        )
        progress = ImportProgress(
            import_id=lease.import_id,
            status="failed",
            processed=counters.processed,
            success=counters.success,
            errors=counters.errors,
            attempt=lease.attempt,
            updated_at=self._clock(),
            error=error,
        )
        try:
            await write_progress(self._cache, progress, self._progress_ttl)
        except CacheUnavailableError:
            logger.warning("Could not record failure of import %s in the cache", lease.import_id)
        return STATUS_FAILED

    def _delete_source(self, lease: ImportLease) -> None:
        try:
            self._storage.delete(lease.file_reference)
        except (OSError, ValueError):
            logger.warning(
                "Could not delete file %s of import %s",
                lease.file_reference,
                lease.import_id,
                exc_info=True,
            )
