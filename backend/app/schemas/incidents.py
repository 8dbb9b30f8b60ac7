"""
Pydantic v2 schemas for citizen incident creation.

The citizen is the authenticated caller, never a payload field.
`idempotency_key` is accepted in the body for clients that cannot set
headers; the idempotency stage reads it, the handler ignores it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class IncidentCreate(BaseModel):
    """Payload accepted by POST /incidents."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=255, examples=["Broken streetlight"])
    description: str = Field(..., min_length=1, examples=["Lamp out since Monday."])
    category_id: int = Field(..., ge=1, examples=[1])
    latitude: float = Field(..., ge=-90, le=90, examples=[40.4168])
    longitude: float = Field(..., ge=-180, le=180, examples=[-3.7038])
    priority: Literal["low", "medium", "high"] = "medium"
    idempotency_key: str | None = Field(default=None, max_length=255)


class IncidentResponse(BaseModel):
    """The stored incident."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str
    category_id: int
    priority: str
    status: str
    location_lat: float
    location_lng: float
    citizen_id: int
    assigned_agent_id: int | None
    created_at: datetime
