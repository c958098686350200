"""Daily grade summary model: derived per (school, grade, date) aggregates."""

from sqlalchemy import Column, String, Integer, Float, Boolean, Date, ForeignKey, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from attendance_sync.models.base import Base, TimestampMixin, UUIDMixin


class DailyGradeSummary(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "daily_grade_summaries"

    school_id = Column(UUID(as_uuid=True), ForeignKey("schools.id"), nullable=False, index=True)
    grade_level = Column(Integer, nullable=False)
    summary_date = Column(Date, nullable=False, index=True)
    school_year = Column(String(9), nullable=False, index=True)  # e.g. 2024-2025

    total_students = Column(Integer, nullable=False, default=0)
    students_present = Column(Integer, nullable=False, default=0)
    students_absent = Column(Integer, nullable=False, default=0)
    tardy_count = Column(Integer, nullable=False, default=0)
    excused_absences = Column(Integer, nullable=False, default=0)
    unexcused_absences = Column(Integer, nullable=False, default=0)
    daily_absences = Column(Integer, nullable=False, default=0)
    cumulative_absences = Column(Integer, nullable=False, default=0)

    attendance_rate = Column(Float, nullable=False, default=100.0)
    absence_rate = Column(Float, nullable=False, default=0.0)

    includes_synthesized = Column(Boolean, nullable=False, default=False)

    school = relationship("School")

    __table_args__ = (
        UniqueConstraint("school_id", "grade_level", "summary_date", name="uq_summary_school_grade_date"),
        Index("idx_summary_school_grade_year", "school_id", "grade_level", "school_year", "summary_date"),
        CheckConstraint("students_present + students_absent = total_students", name="ck_summary_totals"),
        CheckConstraint("attendance_rate >= 0 AND attendance_rate <= 100", name="ck_summary_rate_range"),
    )
