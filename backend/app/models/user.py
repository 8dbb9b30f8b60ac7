"""
User model.

Only the fields the ingestion core touches are mapped. Citizens created by
the CSV importer are placeholder identities: no email, no password hash,
so they can never log in.

Citizen lookups go by (name, role); the composite index keeps the
find-or-create step cheap during large imports.
"""

import datetime

from sqlalchemy import TIMESTAMP, Index, Integer, String
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

ROLE_CITIZEN = "citizen"
STATUS_ACTIVE = "active"


class User(Base):
    """A citizen, operator, agent or admin."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=ROLE_CITIZEN)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_ACTIVE)
    created_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_users_name_role", "name", "role"),)

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.name!r} role={self.role}>"
