"""
Idempotency record model — one cached response per request key.

Design notes:
  • request_key is unique: a retry after expiry overwrites the old row
    (INSERT … ON CONFLICT DO UPDATE) instead of adding a second one.
  • response_body is stored as raw bytes so replays are byte-identical,
    content_type is kept alongside so the replay has the same media type.
  • (request_key, expires_at) is indexed for the lookup on every mutating
    request and for the expiry sweep.
"""

import datetime

from sqlalchemy import TIMESTAMP, Index, Integer, LargeBinary, String
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class IdempotencyRecord(Base):
    """Snapshot of a successful (2xx) response to a mutating request."""

    __tablename__ = "idempotency_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    response_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    response_body: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_idempotency_records_key_expires", "request_key", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<IdempotencyRecord key={self.request_key[:16]!r} "
            f"status={self.status_code} expires={self.expires_at}>"
        )
