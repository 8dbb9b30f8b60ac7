"""create ingestion core tables

Revision ID: 0001
Revises:
Create Date: 2026-10-12

Tables:
  - categories, users, incidents (the slice of the domain the core writes)
  - idempotency_records (cached responses per request key)
  - rate_limits (admin-editable throttle policies)
  - cache_entries (shared expiring cache: counters, locks, import progress)
  - import_jobs, import_row_errors (CSV import state and checkpoints)
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_DOCUMENT = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    # ── 1. categories ───────────────────────────────────────
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    # ── 2. users ────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_name_role", "users", ["name", "role"])

    # ── 3. incidents ────────────────────────────────────────
    op.create_table(
        "incidents",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("location_lat", sa.Float(), nullable=False),
        sa.Column("location_lng", sa.Float(), nullable=False),
        sa.Column("citizen_id", sa.Integer(), nullable=False),
        sa.Column("assigned_agent_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["category_id"], ["categories.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["citizen_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["assigned_agent_id"], ["users.id"], ondelete="SET NULL"),
        sa.CheckConstraint("priority IN ('low', 'medium', 'high')", name="ck_incidents_priority_valid"),
        sa.CheckConstraint(
            "status IN ('new', 'in_progress', 'resolved', 'closed')",
            name="ck_incidents_status_valid",
        ),
    )
    op.create_index("ix_incidents_citizen_id", "incidents", ["citizen_id"])
    op.create_index("ix_incidents_status", "incidents", ["status"])

    # ── 4. idempotency_records ──────────────────────────────
    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("request_key", sa.String(255), nullable=False),
        sa.Column("response_hash", sa.String(64), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("content_type", sa.String(255), nullable=True),
        sa.Column("response_body", sa.LargeBinary(), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_key"),
    )
    op.create_index(
        "ix_idempotency_records_key_expires",
        "idempotency_records",
        ["request_key", "expires_at"],
    )

    # ── 5. rate_limits ──────────────────────────────────────
    op.create_table(
        "rate_limits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("time_unit", sa.String(10), nullable=False),
        sa.Column("time_value", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
        sa.CheckConstraint("max_attempts >= 0", name="ck_rate_limits_max_attempts_non_neg"),
        sa.CheckConstraint("time_value > 0", name="ck_rate_limits_time_value_pos"),
        sa.CheckConstraint(
            "time_unit IN ('minute', 'hour', 'day')",
            name="ck_rate_limits_time_unit_valid",
        ),
    )

    # ── 6. cache_entries ────────────────────────────────────
    op.create_table(
        "cache_entries",
        sa.Column("cache_key", sa.String(255), nullable=False),
        sa.Column("payload", JSON_DOCUMENT, nullable=True),
        sa.Column("counter", sa.BigInteger(), nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cache_key"),
    )
    op.create_index("ix_cache_entries_expires_at", "cache_entries", ["expires_at"])

    # ── 7. import_jobs ──────────────────────────────────────
    op.create_table(
        "import_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("import_id", sa.String(64), nullable=False),
        sa.Column("file_reference", sa.String(512), nullable=False),
        sa.Column("requested_by", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("lease_expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("processed", sa.Integer(), nullable=False),
        sa.Column("success", sa.Integer(), nullable=False),
        sa.Column("errors", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("finished_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("import_id"),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="ck_import_jobs_status_valid",
        ),
    )
    op.create_index("ix_import_jobs_status", "import_jobs", ["status"])

    # ── 8. import_row_errors ────────────────────────────────
    op.create_table(
        "import_row_errors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("import_id", sa.String(64), nullable=False),
        sa.Column("row_number", sa.Integer(), nullable=False),
        sa.Column("error", sa.Text(), nullable=False),
        sa.Column("data", JSON_DOCUMENT, nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["import_id"], ["import_jobs.import_id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_import_row_errors_import_row",
        "import_row_errors",
        ["import_id", "row_number"],
    )


def downgrade() -> None:
    op.drop_index("ix_import_row_errors_import_row", table_name="import_row_errors")
    op.drop_table("import_row_errors")
    op.drop_index("ix_import_jobs_status", table_name="import_jobs")
    op.drop_table("import_jobs")
    op.drop_index("ix_cache_entries_expires_at", table_name="cache_entries")
    op.drop_table("cache_entries")
    op.drop_table("rate_limits")
    op.drop_index("ix_idempotency_records_key_expires", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index("ix_incidents_status", table_name="incidents")
    op.drop_index("ix_incidents_citizen_id", table_name="incidents")
    op.drop_table("incidents")
    op.drop_index("ix_users_name_role", table_name="users")
    op.drop_table("users")
    op.drop_table("categories")
