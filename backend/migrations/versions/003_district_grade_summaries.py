"""Add district grade summaries.

Per (grade, date) rollup of daily_grade_summaries across all schools.

Revision ID: 003
Revises: 002
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "district_grade_summaries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
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
        sa.Column("schools_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("schools_included", postgresql.JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("grade_level", "summary_date", name="uq_district_grade_date"),
        sa.CheckConstraint("students_present + students_absent = total_students", name="ck_district_totals"),
        sa.CheckConstraint("attendance_rate >= 0 AND attendance_rate <= 100", name="ck_district_rate_range"),
    )
    op.create_index(
        "idx_district_grade_year",
        "district_grade_summaries",
        ["grade_level", "school_year", "summary_date"],
    )


def downgrade() -> None:
    op.drop_table("district_grade_summaries")
