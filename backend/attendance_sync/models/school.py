"""School mapping models: canonical schools and their source-system aliases."""

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from attendance_sync.models.base import Base, TimestampMixin, UUIDMixin


class School(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "schools"

    # Canonical identity
    code = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)

    # Attendance layout
    period_count = Column(Integer, nullable=False, default=7)

    # Soft deactivation (never hard-deleted)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    deactivated_at = Column(DateTime(timezone=True))

    # Relationships
    aliases = relationship("SchoolAlias", back_populates="school", order_by="SchoolAlias.version")

    @property
    def active_aliases(self) -> list["SchoolAlias"]:
        return [a for a in self.aliases if a.is_active]

    @property
    def source_code(self) -> str:
        """Code used when requesting this school from the SIS."""
        for alias in self.active_aliases:
            if alias.is_primary:
                return alias.code
        return self.code


class SchoolAlias(UUIDMixin, TimestampMixin, Base):
    """Versioned source-system code for a school.

    Corrections never edit a row in place: the old row is deactivated and a new
    row with ``version + 1`` is written, so the history of what each code meant
    is kept.
    """

    __tablename__ = "school_aliases"

    school_id = Column(UUID(as_uuid=True), ForeignKey("schools.id"), nullable=False, index=True)
    code = Column(String(20), nullable=False, index=True)
    normalized_code = Column(String(20), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    is_primary = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    deactivated_at = Column(DateTime(timezone=True))
    reason = Column(Text)

    school = relationship("School", back_populates="aliases")

    __table_args__ = (
        UniqueConstraint("code", "version", name="uq_school_alias_code_version"),
        Index("idx_alias_active_code", "is_active", "code"),
    )
