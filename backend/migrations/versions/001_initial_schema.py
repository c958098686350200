"""Initial schema: schools, aliases, student identities, sync operations, attendance, summaries.

Revision ID: 001
Revises:
Create Date: 2026-09-14
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Schools
    op.create_table(
        "schools",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(20), unique=True, nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("period_count", sa.Integer, nullable=False, server_default=sa.text("7")),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true"), index=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # School aliases (versioned source codes)
    op.create_table(
        "school_aliases",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("school_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("schools.id"), nullable=False, index=True),
        sa.Column("code", sa.String(20), nullable=False, index=True),
        sa.Column("normalized_code", sa.String(20), nullable=False, index=True),
        sa.Column("version", sa.Integer, nullable=False, server_default=sa.text("1")),
        sa.Column("is_primary", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true"), index=True),
        sa.Column("deactivated_at", sa.DateTime(timezone=True)),
        sa.Column("reason", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("code", "version", name="uq_school_alias_code_version"),
    )
    op.create_index("idx_alias_active_code", "school_aliases", ["is_active", "code"])

    # Student identities
    op.create_table(
        "student_identities",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("canonical_student_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("source_student_id", sa.String(50), nullable=False, index=True),
        sa.Column("school_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("schools.id"), nullable=False, index=True),
        sa.Column("grade_level", sa.Integer, nullable=False),
        sa.Column("effective_from", sa.Date, nullable=False),
        sa.Column("effective_to", sa.Date),
        sa.Column("is_current", sa.Boolean, nullable=False, server_default=sa.text("true"), index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_student_source_current", "student_identities", ["source_student_id", "is_current"])
    op.create_index("idx_student_school_grade", "student_identities", ["school_id", "grade_level"])

    # Sync operations
    op.create_table(
        "sync_operations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column("target_school_ids", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING", index=True),
        sa.Column("requested_by", sa.String(100)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("last_checkpoint_at", sa.DateTime(timezone=True)),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("counters", postgresql.JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("errors", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("summaries_written", sa.Integer, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_operation_status_window", "sync_operations", ["status", "start_date", "end_date"])

    op.create_table(
        "sync_operation_schools",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("operation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("sync_operations.id"), nullable=False, index=True),
        sa.Column("school_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("schools.id"), nullable=False, index=True),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("source_shape", sa.String(20)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("students_synced", sa.Integer, server_default=sa.text("0")),
        sa.Column("records_fetched", sa.Integer, server_default=sa.text("0")),
        sa.Column("events_normalized", sa.Integer, server_default=sa.text("0")),
        sa.Column("records_rejected", sa.Integer, server_default=sa.text("0")),
        sa.Column("reconciliation_gaps", sa.Integer, server_default=sa.text("0")),
        sa.Column("events_inserted", sa.Integer, server_default=sa.text("0")),
        sa.Column("events_updated", sa.Integer, server_default=sa.text("0")),
        sa.Column("events_unchanged", sa.Integer, server_default=sa.text("0")),
        sa.Column("events_failed", sa.Integer, server_default=sa.text("0")),
        sa.Column("year_summaries", sa.Integer, server_default=sa.text("0")),
        sa.Column("touched_dates", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("error_message", sa.Text),
    )

    # Attendance events
    op.create_table(
        "attendance_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("student_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("school_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("schools.id"), nullable=False, index=True),
        sa.Column("grade_level", sa.Integer, nullable=False),
        sa.Column("attendance_date", sa.Date, nullable=False, index=True),
        sa.Column("presence_state", sa.String(20), nullable=False),
        sa.Column("period_states", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("provenance", sa.String(20), nullable=False, server_default="OBSERVED"),
        sa.Column("source_shape", sa.String(20), nullable=False),
        sa.Column("source_student_id", sa.String(50), nullable=False),
        sa.Column("source_school_code", sa.String(20), nullable=False),
        sa.Column("all_day_code", sa.String(10)),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("last_operation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("sync_operations.id"), index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("student_id", "attendance_date", name="uq_attendance_student_date"),
    )
    op.create_index("idx_attendance_school_date", "attendance_events", ["school_id", "attendance_date"])
    op.create_index("idx_attendance_school_grade_date", "attendance_events", ["school_id", "grade_level", "attendance_date"])

    # Daily grade summaries
    op.create_table(
        "daily_grade_summaries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("school_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("schools.id"), nullable=False, index=True),
        sa.Column("grade_level", sa.Integer, nullable=False),
        sa.Column("summary_date", sa.Date, nullable=False, index=True),
        sa.Column("school_year", sa.String(9), nullable=False, index=True),
        sa.Column("total_students", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("students_present", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("students_absent", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("tardy_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("excused_absences", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("unexcused_absences", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("daily_absences", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("cumulative_absences", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("attendance_rate", sa.Float, nullable=False, server_default=sa.text("100")),
        sa.Column("absence_rate", sa.Float, nullable=False, server_default=sa.text("0")),
        sa.Column("includes_synthesized", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("school_id", "grade_level", "summary_date", name="uq_summary_school_grade_date"),
        sa.CheckConstraint("students_present + students_absent = total_students", name="ck_summary_totals"),
        sa.CheckConstraint("attendance_rate >= 0 AND attendance_rate <= 100", name="ck_summary_rate_range"),
    )
    op.create_index(
        "idx_summary_school_grade_year",
        "daily_grade_summaries",
        ["school_id", "grade_level", "school_year", "summary_date"],
    )


def downgrade() -> None:
    op.drop_table("daily_grade_summaries")
    op.drop_table("attendance_events")
    op.drop_table("sync_operation_schools")
    op.drop_table("sync_operations")
    op.drop_table("student_identities")
    op.drop_table("school_aliases")
    op.drop_table("schools")
