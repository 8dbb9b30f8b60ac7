"""
Route class that runs every endpoint through the request pipeline.

Routers opt in with APIRouter(route_class=GuardedRoute). Each guarded
route is limited by the global "api" action plus whatever the endpoint
declares with @throttle(...), then passes the idempotency stage:

    @router.post("", status_code=202)
    @throttle("csv-import")
    async def upload_csv(...): ...

@throttle must sit below the router decorator so the route sees it.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import Request, Response
from fastapi.routing import APIRoute

from app.middleware.pipeline import RequestPipeline
from app.middleware.rate_limit import RateLimitStage

GLOBAL_ACTION = "api"

F = TypeVar("F", bound=Callable[..., Any])


def throttle(*actions: str) -> Callable[[F], F]:
    """Attach named rate-limit actions to an endpoint."""

    def decorator(endpoint: F) -> F:
        endpoint.rate_limit_actions = tuple(actions)  # type: ignore[attr-defined]
        return endpoint

    return decorator


class GuardedRoute(APIRoute):
    def get_route_handler(self) -> Callable[[Request], Any]:
        handler = super().get_route_handler()
        actions = (GLOBAL_ACTION, *getattr(self.endpoint, "rate_limit_actions", ()))

        async def guarded_handler(request: Request) -> Response:
            services = request.app.state.services
            pipeline = RequestPipeline(
                [
                    RateLimitStage(services.rate_limiter, actions),
                    services.idempotency_stage,
                ]
            )
            return await pipeline.run(request, handler)

        return guarded_handler
