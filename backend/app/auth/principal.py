"""
Request identity helpers.

Authentication itself happens upstream (gateway / session layer). By the
time a request reaches this service, the authenticated user id (if any)
is carried in the PRINCIPAL_HEADER header. Everything here only reads it.

Identity for rate limiting is the user id when present, otherwise the
client address. Never both.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from app.core.config import settings

logger = logging.getLogger(__name__)

_AUTH_REQUIRED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Authentication required.",
)


@dataclass(frozen=True, slots=True)
class Principal:
    """The authenticated caller."""

    user_id: int


def principal_from_request(request: Request) -> Principal | None:
    raw = request.headers.get(settings.PRINCIPAL_HEADER)
    if not raw:
        return None
    try:
        return Principal(user_id=int(raw.strip()))
    except ValueError:
        logger.warning("Ignoring malformed %s header", settings.PRINCIPAL_HEADER)
        return None


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit_identity(request: Request) -> str:
    principal = principal_from_request(request)
    if principal is not None:
        return f"user:{principal.user_id}"
    return f"ip:{client_address(request)}"


async def get_current_principal(request: Request) -> Principal:
    """
    FastAPI dependency — the authenticated caller, or 401.

    Usage in routers:
        CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
    """
    principal = principal_from_request(request)
    if principal is None:
        raise _AUTH_REQUIRED
    return principal
