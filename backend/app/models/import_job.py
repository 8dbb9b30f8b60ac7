"""
Import job models — durable state of one CSV bulk import.

ImportJob is the queue entry and the checkpoint:
  • status walks queued → processing → completed | failed, and the two
    terminal transitions are conditional updates, so each import gets
    exactly one of them.
  • attempt is the generation number of the current lease. Every checkpoint
    write is guarded by it, which fences off an attempt that was timed out
    but has not noticed yet.
  • processed/success/errors are committed in the same transaction as the
    row they count, so a retried attempt resumes after the last committed
    row instead of creating its incidents a second time.

ImportRowError keeps the per-row error details for the final result.
"""

import datetime

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ACTIVE_STATUSES = (STATUS_QUEUED, STATUS_PROCESSING)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class ImportJob(Base):
    """One uploaded CSV file and its processing state."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    import_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    file_reference: Mapped[str] = mapped_column(String(512), nullable=False)
    requested_by: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_QUEUED)

    # ── Lease ───────────────────────────────────────────────
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lease_expires_at: Mapped[datetime.datetime | None] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )

    # ── Checkpoint ──────────────────────────────────────────
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    finished_at: Mapped[datetime.datetime | None] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="ck_import_jobs_status_valid",
        ),
        Index("ix_import_jobs_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ImportJob {self.import_id} status={self.status} "
            f"attempt={self.attempt} processed={self.processed}>"
        )


class ImportRowError(Base):
    """A CSV row that failed validation."""

    __tablename__ = "import_row_errors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    import_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("import_jobs.import_id", ondelete="CASCADE"),
        nullable=False,
    )
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[list] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_import_row_errors_import_row", "import_id", "row_number"),
    )

    def __repr__(self) -> str:
        return f"<ImportRowError {self.import_id} row={self.row_number}>"
