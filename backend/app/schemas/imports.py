"""
Pydantic v2 schemas for CSV bulk imports.

ImportProgress and ImportResult double as the cache payloads: workers
write `model_dump(mode="json")`, the polling endpoint validates what it
reads back, so both sides agree on one shape.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


# ── Cache payloads ──────────────────────────────────────────
class RowError(BaseModel):
    """One CSV row that failed validation."""

    row: int = Field(..., description="Line record number in the file (header = 1).")
    error: str
    data: list[str] = Field(..., description="The raw row as parsed from the CSV.")


class ImportProgress(BaseModel):
    """Live counters, overwritten as rows are processed."""

    import_id: str
    status: Literal["processing", "failed"] = "processing"
    processed: int = 0
    success: int = 0
    errors: int = 0
    attempt: int = 0
    updated_at: datetime
    error: str | None = Field(
        default=None,
        description="Set only when status is 'failed'.",
    )


class ImportResult(BaseModel):
    """Final outcome, written once when the import completes."""

    import_id: str
    success: int
    errors: int
    total: int
    error_details: list[RowError]


# ── HTTP responses ──────────────────────────────────────────
class ImportAccepted(BaseModel):
    """Returned by POST /imports with 202 Accepted."""

    import_id: str
    status: Literal["processing"] = "processing"
    message: str = "CSV import started. Poll the status endpoint for progress."


class ImportCompleted(BaseModel):
    """GET /imports/{id} once the result is available."""

    import_id: str
    status: Literal["completed"] = "completed"
    results: ImportResult


class ImportNotFound(BaseModel):
    import_id: str
    status: Literal["not_found"] = "not_found"
    message: str = "Import not found or has expired"
