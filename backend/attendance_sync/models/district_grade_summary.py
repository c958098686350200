"""District grade summary model: per (grade, date) rollup across schools."""

from sqlalchemy import Column, String, Integer, Float, Boolean, Date, Index, UniqueConstraint, CheckConstraint

from attendance_sync.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class DistrictGradeSummary(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "district_grade_summaries"

    grade_level = Column(Integer, nullable=False)
    summary_date = Column(Date, nullable=False, index=True)
    school_year = Column(String(9), nullable=False, index=True)

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

    # Schools with a summary row for this grade and date
    schools_count = Column(Integer, nullable=False, default=0)
    schools_included = Column(JSONType, nullable=False, default=list)  # [school_id, ...]

    __table_args__ = (
        UniqueConstraint("grade_level", "summary_date", name="uq_district_grade_date"),
        Index("idx_district_grade_year", "grade_level", "school_year", "summary_date"),
        CheckConstraint("students_present + students_absent = total_students", name="ck_district_totals"),
        CheckConstraint("attendance_rate >= 0 AND attendance_rate <= 100", name="ck_district_rate_range"),
    )
