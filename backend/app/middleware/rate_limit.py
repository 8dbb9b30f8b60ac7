"""
Rate-limit stage.

Checks each configured action for the caller's identity, in order, and
short-circuits with 429 on the first one that is exhausted. Unlike the
usual generic 429, the body tells the client exactly when to come back:

    {"message": ..., "retry_after": 42, "action": "csv-import", "max_attempts": 5}

plus a standard Retry-After header.
"""

from __future__ import annotations

from collections.abc import Sequence

from fastapi import Request, status
from fastapi.responses import JSONResponse

from app.auth.principal import rate_limit_identity
from app.middleware.pipeline import Continue, RequestStage, ShortCircuit, StageResult
from app.services.rate_limiter import RateLimiter, Throttled


def throttled_response(decision: Throttled) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "message": "Too many attempts. Please try again later.",
            "retry_after": decision.retry_after,
            "action": decision.action,
            "max_attempts": decision.max_attempts,
        },
        headers={"Retry-After": str(decision.retry_after)},
    )


class RateLimitStage(RequestStage):
    def __init__(self, limiter: RateLimiter, actions: Sequence[str]) -> None:
        self._limiter = limiter
        self._actions = tuple(actions)

    async def enter(self, request: Request) -> StageResult:
        identity = rate_limit_identity(request)
        for action in self._actions:
            decision = await self._limiter.check(action, identity)
            if isinstance(decision, Throttled):
                return ShortCircuit(throttled_response(decision))
        return Continue()
