"""Reconciliation gap models: unresolved source codes and the rows they held back."""

from sqlalchemy import Column, String, Integer, Date, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from attendance_sync.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class ReconciliationGapRecord(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "reconciliation_gaps"

    kind = Column(String(20), nullable=False)  # school, student
    raw_code = Column(String(50), nullable=False)
    normalized_code = Column(String(50), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, resolved
    occurrences = Column(Integer, nullable=False, default=0)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_operation_id = Column(UUID(as_uuid=True), ForeignKey("sync_operations.id"))
    resolved_at = Column(DateTime(timezone=True))

    parked_events = relationship("ParkedAttendanceEvent", back_populates="gap", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("kind", "raw_code", name="uq_gap_kind_code"),
    )


class ParkedAttendanceEvent(UUIDMixin, TimestampMixin, Base):
    """Normalized attendance that could not be attributed to a canonical identity."""

    __tablename__ = "parked_attendance_events"

    gap_id = Column(UUID(as_uuid=True), ForeignKey("reconciliation_gaps.id"), nullable=False, index=True)

    source_school_code = Column(String(20), nullable=False)
    source_student_id = Column(String(50), nullable=False)
    attendance_date = Column(Date, nullable=False)
    presence_state = Column(String(20), nullable=False)
    period_states = Column(JSONType, nullable=False, default=list)
    provenance = Column(String(20), nullable=False)
    source_shape = Column(String(20), nullable=False)
    all_day_code = Column(String(10))

    gap = relationship("ReconciliationGapRecord", back_populates="parked_events")

    __table_args__ = (
        UniqueConstraint(
            "source_school_code", "source_student_id", "attendance_date",
            name="uq_parked_school_student_date",
        ),
        Index("idx_parked_gap_date", "gap_id", "attendance_date"),
    )
