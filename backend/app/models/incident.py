"""
SQLAlchemy model for the `incidents` table.

Only creation is in scope: the citizen endpoint and the CSV importer both
insert rows here. Assignment, notes and attachments belong to the CRUD
layer.
"""

import datetime

from sqlalchemy import (
    TIMESTAMP,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

PRIORITIES = ("low", "medium", "high")
STATUSES = ("new", "in_progress", "resolved", "closed")


class Incident(Base):
    """One reported municipal incident."""

    __tablename__ = "incidents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("categories.id", ondelete="RESTRICT"),
        nullable=False,
    )
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="new")

    # ── Location ────────────────────────────────────────────
    location_lat: Mapped[float] = mapped_column(Float, nullable=False)
    location_lng: Mapped[float] = mapped_column(Float, nullable=False)

    # ── People ──────────────────────────────────────────────
    citizen_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    assigned_agent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "priority IN ('low', 'medium', 'high')",
            name="ck_incidents_priority_valid",
        ),
        CheckConstraint(
            "status IN ('new', 'in_progress', 'resolved', 'closed')",
            name="ck_incidents_status_valid",
        ),
        Index("ix_incidents_citizen_id", "citizen_id"),
        Index("ix_incidents_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Incident id={self.id} title={self.title!r} status={self.status}>"
