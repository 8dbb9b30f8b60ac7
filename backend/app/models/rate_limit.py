"""
Rate limit policy model — admin-editable overrides for the built-in limits.

A policy is looked up by action name on every check, so edits take effect
on the next request. The window is stored as (time_unit, time_value) for
humans and exposed as whole seconds for the limiter.
"""

import datetime

from sqlalchemy import TIMESTAMP, Boolean, CheckConstraint, Integer, String, Text
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

UNIT_SECONDS = {
    "minute": 60,
    "hour": 3600,
    "day": 86400,
}


class RateLimitPolicy(Base):
    """max_attempts per (time_value × time_unit) for one named action."""

    __tablename__ = "rate_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    time_unit: Mapped[str] = mapped_column(String(10), nullable=False)
    time_value: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("max_attempts >= 0", name="ck_rate_limits_max_attempts_non_neg"),
        CheckConstraint("time_value > 0", name="ck_rate_limits_time_value_pos"),
        CheckConstraint(
            "time_unit IN ('minute', 'hour', 'day')",
            name="ck_rate_limits_time_unit_valid",
        ),
    )

    @property
    def window_seconds(self) -> int:
        return self.time_value * UNIT_SECONDS[self.time_unit]

    def __repr__(self) -> str:
        return (
            f"<RateLimitPolicy name={self.name} max={self.max_attempts} "
            f"per={self.time_value} {self.time_unit} active={self.is_active}>"
        )
