"""Attendance year summary model: low-fidelity totals from the summary endpoint."""

from sqlalchemy import Column, String, Integer, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from attendance_sync.models.base import Base, TimestampMixin, UUIDMixin


class AttendanceYearSummary(UUIDMixin, TimestampMixin, Base):
    """Summary-only source data. Not an input to the timeline aggregator."""

    __tablename__ = "attendance_year_summaries"

    student_id = Column(UUID(as_uuid=True), nullable=False, index=True)  # canonical_student_id
    school_id = Column(UUID(as_uuid=True), ForeignKey("schools.id"), nullable=False, index=True)
    school_year = Column(String(9), nullable=False)

    days_enrolled = Column(Integer, nullable=False, default=0)
    days_present = Column(Integer, nullable=False, default=0)
    days_absent = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("student_id", "school_id", "school_year", name="uq_year_summary_student_school_year"),
    )
