"""
Service wiring.

Everything with state (cache, stores, limiter, storage, import runner) is
built here once per application and hung on app.state.services. Routes,
stages and the maintenance sweep read collaborators from there instead of
importing module-level singletons, which is what lets tests swap in an
InMemoryCache, a temp upload dir and a fake clock.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.database import utcnow
from app.middleware.idempotency import IdempotencyStage
from app.services.cache import Clock, DatabaseCache, ExpiringCache, InMemoryCache
from app.services.csv_import import ImportPipeline
from app.services.idempotency import IdempotencyStore
from app.services.import_jobs import ImportJobRepository
from app.services.import_runner import ImportJobRunner, RetryPolicy
from app.services.rate_limiter import RateLimiter
from app.services.storage import LocalFileStorage


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    clock: Clock
    cache: ExpiringCache
    storage: LocalFileStorage
    idempotency_store: IdempotencyStore
    idempotency_stage: IdempotencyStage
    rate_limiter: RateLimiter
    import_jobs: ImportJobRepository
    import_runner: ImportJobRunner


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    cache: ExpiringCache | None = None,
    storage: LocalFileStorage | None = None,
    retry_policy: RetryPolicy | None = None,
    clock: Clock = utcnow,
) -> Services:
    if cache is None:
        if settings.CACHE_BACKEND == "memory":
            cache = InMemoryCache(clock=clock)
        else:
            cache = DatabaseCache(session_factory, clock=clock)
    if storage is None:
        storage = LocalFileStorage(settings.UPLOAD_DIR)
    if retry_policy is None:
        retry_policy = RetryPolicy(
            max_attempts=settings.IMPORT_MAX_ATTEMPTS,
            timeout_seconds=settings.IMPORT_TIMEOUT_SECONDS,
            backoff_seconds=settings.IMPORT_RETRY_BACKOFF_SECONDS,
        )

    idempotency_store = IdempotencyStore(session_factory, clock=clock)
    import_jobs = ImportJobRepository(session_factory, clock=clock)
    pipeline = ImportPipeline(
        session_factory,
        import_jobs,
        cache,
        storage,
        progress_every=settings.IMPORT_PROGRESS_EVERY,
        progress_ttl=settings.IMPORT_PROGRESS_TTL_SECONDS,
        clock=clock,
    )

    return Services(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        cache=cache,
        storage=storage,
        idempotency_store=idempotency_store,
        idempotency_stage=IdempotencyStage(
            idempotency_store,
            cache,
            ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS,
            lock_seconds=settings.IDEMPOTENCY_LOCK_SECONDS,
            wait_seconds=settings.IDEMPOTENCY_WAIT_SECONDS,
            poll_interval=settings.IDEMPOTENCY_POLL_INTERVAL,
            max_key_length=settings.IDEMPOTENCY_KEY_MAX_LENGTH,
        ),
        rate_limiter=RateLimiter(cache, session_factory),
        import_jobs=import_jobs,
        import_runner=ImportJobRunner(
            pipeline,
            import_jobs,
            cache,
            storage,
            policy=retry_policy,
            workers=settings.IMPORT_WORKERS,
            progress_ttl=settings.IMPORT_PROGRESS_TTL_SECONDS,
            result_ttl=settings.IMPORT_RESULT_TTL_SECONDS,
            clock=clock,
        ),
    )
