"""Student identity model: canonical student per school enrollment period."""

import uuid

from sqlalchemy import Column, String, Integer, Boolean, Date, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from attendance_sync.models.base import Base, TimestampMixin, UUIDMixin


class StudentIdentity(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "student_identities"

    # Stable across transfers; one row per school enrollment period
    canonical_student_id = Column(UUID(as_uuid=True), nullable=False, default=uuid.uuid4, index=True)
    source_student_id = Column(String(50), nullable=False, index=True)

    school_id = Column(UUID(as_uuid=True), ForeignKey("schools.id"), nullable=False, index=True)
    grade_level = Column(Integer, nullable=False)

    # Enrollment window: [effective_from, effective_to)
    effective_from = Column(Date, nullable=False)
    effective_to = Column(Date)
    is_current = Column(Boolean, default=True, nullable=False, index=True)

    school = relationship("School")

    __table_args__ = (
        Index("idx_student_source_current", "source_student_id", "is_current"),
        Index("idx_student_school_grade", "school_id", "grade_level"),
    )
