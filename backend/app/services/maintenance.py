"""
Housekeeping sweeps.

Each CleanupKind has exactly one handler; a kind without one fails at
import time rather than at 3 a.m. Handlers are idempotent: a second run
right after the first removes nothing.

Two entry points share run_cleanup():
  • maintenance_loop() — started from the app lifespan every
    MAINTENANCE_INTERVAL_SECONDS.
  • scripts/cleanup.py — one-off runs from cron or by hand.
"""

from __future__ import annotations

import asyncio
import datetime
import enum
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from app.services.cache import CacheUnavailableError
from app.services.idempotency import IdempotencyStoreUnavailable

if TYPE_CHECKING:
    from app.services.container import Services

logger = logging.getLogger(__name__)


class CleanupKind(str, enum.Enum):
    IDEMPOTENCY = "idempotency"
    CACHE = "cache"
    TEMP_FILES = "temp_files"
    IMPORT_HISTORY = "import_history"


# ── Handlers ────────────────────────────────────────────────
async def _expired_idempotency(services: Services) -> int:
    return await services.idempotency_store.cleanup_expired()


async def _expired_cache(services: Services) -> int:
    return await services.cache.purge_expired()


async def _stale_uploads(services: Services) -> int:
    max_age = services.settings.TEMP_FILE_MAX_AGE_DAYS * 86400
    return await asyncio.to_thread(services.storage.purge_older_than, max_age)


async def _old_imports(services: Services) -> int:
    cutoff = services.clock() - datetime.timedelta(
        days=services.settings.IMPORT_HISTORY_RETENTION_DAYS
    )
    return await services.import_jobs.purge_finished_before(cutoff)


_HANDLERS: dict[CleanupKind, Callable[[Services], Awaitable[int]]] = {
    CleanupKind.IDEMPOTENCY: _expired_idempotency,
    CleanupKind.CACHE: _expired_cache,
    CleanupKind.TEMP_FILES: _stale_uploads,
    CleanupKind.IMPORT_HISTORY: _old_imports,
}

_missing = set(CleanupKind) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"No cleanup handler for: {sorted(k.value for k in _missing)}")


# ── Entry points ────────────────────────────────────────────
async def run_cleanup(
    services: Services,
    kinds: Iterable[CleanupKind] | None = None,
) -> dict[CleanupKind, int]:
    """
    Run the selected sweeps (all by default) and return removed counts.

    A failing sweep is logged and skipped so the others still run; it is
    reported with -1.
    """
    removed: dict[CleanupKind, int] = {}
    for kind in kinds or CleanupKind:
        try:
            removed[kind] = await _HANDLERS[kind](services)
        except (SQLAlchemyError, CacheUnavailableError, IdempotencyStoreUnavailable, OSError):
            logger.exception("Cleanup %s failed", kind.value)
            removed[kind] = -1
            continue
        logger.info("Cleanup %s removed %d item(s)", kind.value, removed[kind])
    return removed


async def maintenance_loop(services: Services, interval_seconds: float) -> None:
    """Run every sweep, then sleep; until cancelled."""
    while True:
        await run_cleanup(services)
        await asyncio.sleep(interval_seconds)
