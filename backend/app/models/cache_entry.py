"""
Cache entry model — backing table for the database cache driver.

One row per key. `payload` holds JSON documents (progress, results, locks);
`counter` holds integer counters (rate limiting). Expired rows are treated
as absent by every read and are overwritten in place by the next write,
so the maintenance sweep is only about reclaiming space.
"""

import datetime
from typing import Any

from sqlalchemy import JSON, TIMESTAMP, BigInteger, Index, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class CacheEntry(Base):
    """A key → payload/counter mapping with an absolute expiry."""

    __tablename__ = "cache_entries"

    cache_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[Any] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )
    counter: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    expires_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
    )

    __table_args__ = (Index("ix_cache_entries_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        return f"<CacheEntry key={self.cache_key!r} expires={self.expires_at}>"
