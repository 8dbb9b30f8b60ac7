"""
Incidents router — citizen incident creation.

POST /incidents
  1. Rate limited by "api" and "incident-creation" (GuardedRoute).
  2. Deduplicated by the idempotency stage; a retried request with the
     same key gets the first response back byte for byte.
  3. Validates the payload (Pydantic) and the category.
  4. Stores the incident for the authenticated citizen, unassigned.
  5. Returns the stored record with 201 Created.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.principal import Principal, get_current_principal
from app.core.database import get_db_session
from app.middleware.route import GuardedRoute, throttle
from app.models.category import Category
from app.models.incident import Incident
from app.schemas.incidents import IncidentCreate, IncidentResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Incidents"], route_class=GuardedRoute)

DbSession = Annotated[AsyncSession, Depends(get_db_session)]
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


@router.post(
    "",
    response_model=IncidentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Report a new incident",
    description=(
        "Creates an incident on behalf of the authenticated citizen. "
        "Send an Idempotency-Key header to make retries safe. Rate limited."
    ),
)
@throttle("incident-creation")
async def create_incident(
    payload: IncidentCreate,
    session: DbSession,
    principal: CurrentPrincipal,
) -> Incident:
    # ── 1. Category must exist ──────────────────────────────
    if await session.get(Category, payload.category_id) is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid category ID: {payload.category_id}",
        )

    # ── 2. Build the ORM record ─────────────────────────────
    incident = Incident(
        title=payload.title,
        description=payload.description,
        category_id=payload.category_id,
        priority=payload.priority,
        status="new",
        location_lat=payload.latitude,
        location_lng=payload.longitude,
        citizen_id=principal.user_id,
        assigned_agent_id=None,
    )

    # ── 3. Persist ──────────────────────────────────────────
    try:
        session.add(incident)
        await session.commit()
        await session.refresh(incident)
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Failed to persist incident for user %d", principal.user_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to store the incident. Please try again.",
        )

    logger.info("Incident %d created by user %d", incident.id, principal.user_id)
    return incident
