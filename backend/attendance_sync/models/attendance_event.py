"""Attendance event model: one canonical row per (student, date)."""

from sqlalchemy import Column, String, Integer, Date, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from attendance_sync.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class AttendanceEvent(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "attendance_events"

    student_id = Column(UUID(as_uuid=True), nullable=False, index=True)  # canonical_student_id
    school_id = Column(UUID(as_uuid=True), ForeignKey("schools.id"), nullable=False, index=True)
    grade_level = Column(Integer, nullable=False)
    attendance_date = Column(Date, nullable=False, index=True)

    presence_state = Column(String(20), nullable=False)  # PresenceState
    period_states = Column(JSONType, nullable=False, default=list)  # length == school.period_count

    # Source metadata
    provenance = Column(String(20), nullable=False, default="OBSERVED")  # OBSERVED, SYNTHESIZED
    source_shape = Column(String(20), nullable=False)
    source_student_id = Column(String(50), nullable=False)
    source_school_code = Column(String(20), nullable=False)
    all_day_code = Column(String(10))

    # Dedup: identical payloads produce identical hashes
    content_hash = Column(String(64), nullable=False)

    last_operation_id = Column(UUID(as_uuid=True), ForeignKey("sync_operations.id"), index=True)

    __table_args__ = (
        UniqueConstraint("student_id", "attendance_date", name="uq_attendance_student_date"),
        Index("idx_attendance_school_date", "school_id", "attendance_date"),
        Index("idx_attendance_school_grade_date", "school_id", "grade_level", "attendance_date"),
    )
