"""
Per-action, per-identity rate limiter.

Fixed-window counters kept in the shared expiring cache:
  • Key — rate_limit:{action}:{identity}, identity = user id or client IP.
  • Window — the counter's TTL. It is set when the first hit opens the
    window and is never extended, so a policy edit only affects windows
    opened after it.
  • Atomic increment — the counter is bumped and read back in one
    operation; the pre-increment value is compared with max_attempts, so
    concurrent requests can never both slip under the limit.

Policies come from the `rate_limits` table (admin-editable) and fall back
to DEFAULT_POLICIES. Actions with neither are not limited at all.

Failure policy:
  • Counter backend down — allow the request (fail open). Throttling
    protects capacity, it is not a correctness guarantee.
  • Policy table unreachable — use the built-in default.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.rate_limit import UNIT_SECONDS, RateLimitPolicy
from app.services.cache import CacheUnavailableError, ExpiringCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Limit:
    """Resolved limit for one action."""

    action: str
    max_attempts: int
    window_seconds: int


# ── Built-in defaults (used when no active policy row exists) ──
DEFAULT_POLICIES: dict[str, Limit] = {
    "api": Limit("api", 10_000, UNIT_SECONDS["hour"]),
    "incident-creation": Limit("incident-creation", 1_000, UNIT_SECONDS["hour"]),
    "file-upload": Limit("file-upload", 2_000, UNIT_SECONDS["hour"]),
    "csv-import": Limit("csv-import", 100, UNIT_SECONDS["hour"]),
    "login": Limit("login", 5, UNIT_SECONDS["hour"]),
}


# ── Decisions ───────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class Allowed:
    action: str


@dataclass(frozen=True, slots=True)
class Throttled:
    action: str
    max_attempts: int
    retry_after: int  # whole seconds, >= 1


Decision = Allowed | Throttled


def counter_key(action: str, identity: str) -> str:
    return f"rate_limit:{action}:{identity}"


class RateLimiter:
    """Checks and counts attempts; see module docstring for semantics."""

    def __init__(
        self,
        cache: ExpiringCache,
        session_factory: async_sessionmaker[AsyncSession],
        defaults: dict[str, Limit] | None = None,
    ) -> None:
        self._cache = cache
        self._session_factory = session_factory
        self._defaults = DEFAULT_POLICIES if defaults is None else defaults

    async def resolve_limit(self, action: str) -> Limit | None:
        """Active policy row for action, else the built-in default."""
        try:
            async with self._session_factory() as session:
                stmt = select(RateLimitPolicy).where(
                    RateLimitPolicy.name == action,
                    RateLimitPolicy.is_active.is_(True),
                )
                policy = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError:
            logger.warning("Rate limit policy lookup failed for %s; using default", action)
            policy = None

        if policy is not None:
            return Limit(action, policy.max_attempts, policy.window_seconds)
        return self._defaults.get(action)

    async def check(self, action: str, identity: str) -> Decision:
        """
        Count one attempt of `action` by `identity`.

        Returns Throttled when the identity had already used up the window
        before this attempt.
        """
        limit = await self.resolve_limit(action)
        if limit is None:
            return Allowed(action)

        key = counter_key(action, identity)
        try:
            count = await self._cache.increment(key, limit.window_seconds)
            if count - 1 < limit.max_attempts:
                return Allowed(action)
            remaining = await self._cache.expires_in(key)
        except CacheUnavailableError:
            logger.warning("Rate limit store unavailable; allowing %s for %s", action, identity)
            return Allowed(action)

        retry_after = max(1, math.ceil(remaining)) if remaining is not None else 1
        logger.info(
            "Throttled %s for %s (max=%d, retry_after=%ds)",
            action,
            identity,
            limit.max_attempts,
            retry_after,
        )
        return Throttled(action, limit.max_attempts, retry_after)

    async def reset(self, action: str, identity: str) -> bool:
        """Clear the current window for one identity."""
        return await self._cache.delete(counter_key(action, identity))
