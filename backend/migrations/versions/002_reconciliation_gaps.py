"""Add reconciliation gaps, parked attendance and year summaries.

Unresolved source codes are recorded with their attendance rows parked so a
later alias correction can replay them.

Revision ID: 002
Revises: 001
Create Date: 2026-09-28
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "reconciliation_gaps",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("raw_code", sa.String(50), nullable=False),
        sa.Column("normalized_code", sa.String(50), nullable=False, index=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending", index=True),
        sa.Column("occurrences", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_operation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("sync_operations.id")),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("kind", "raw_code", name="uq_gap_kind_code"),
    )

    op.create_table(
        "parked_attendance_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("gap_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("reconciliation_gaps.id"), nullable=False, index=True),
        sa.Column("source_school_code", sa.String(20), nullable=False),
        sa.Column("source_student_id", sa.String(50), nullable=False),
        sa.Column("attendance_date", sa.Date, nullable=False),
        sa.Column("presence_state", sa.String(20), nullable=False),
        sa.Column("period_states", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("provenance", sa.String(20), nullable=False),
        sa.Column("source_shape", sa.String(20), nullable=False),
        sa.Column("all_day_code", sa.String(10)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "source_school_code", "source_student_id", "attendance_date",
            name="uq_parked_school_student_date",
        ),
    )
    op.create_index("idx_parked_gap_date", "parked_attendance_events", ["gap_id", "attendance_date"])

    op.create_table(
        "attendance_year_summaries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("student_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("school_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("schools.id"), nullable=False, index=True),
        sa.Column("school_year", sa.String(9), nullable=False),
        sa.Column("days_enrolled", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("days_present", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("days_absent", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("student_id", "school_id", "school_year", name="uq_year_summary_student_school_year"),
    )


def downgrade() -> None:
    op.drop_table("attendance_year_summaries")
    op.drop_table("parked_attendance_events")
    op.drop_table("reconciliation_gaps")
