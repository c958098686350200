"""Sync operation models: audit log and progress per orchestration run."""

from sqlalchemy import Column, String, Integer, Boolean, Date, DateTime, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from attendance_sync.models.base import Base, JSONType, TimestampMixin, UUIDMixin


class SyncOperation(UUIDMixin, TimestampMixin, Base):
    __tablename__ = "sync_operations"

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    target_school_ids = Column(JSONType, nullable=False, default=list)  # list of UUID strings

    status = Column(String(20), nullable=False, default="PENDING", index=True)  # OperationStatus
    requested_by = Column(String(100))

    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    last_checkpoint_at = Column(DateTime(timezone=True))
    cancel_requested = Column(Boolean, default=False, nullable=False)

    # Totals across schools, aggregation results
    counters = Column(JSONType, nullable=False, default=dict)
    errors = Column(JSONType, nullable=False, default=list)
    summaries_written = Column(Integer, default=0)

    # Relationships
    schools = relationship(
        "SyncOperationSchool",
        back_populates="operation",
        order_by="SyncOperationSchool.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_operation_status_window", "status", "start_date", "end_date"),
    )


class SyncOperationSchool(UUIDMixin, Base):
    """Per-school progress within one operation; makes runs resumable."""

    __tablename__ = "sync_operation_schools"

    operation_id = Column(UUID(as_uuid=True), ForeignKey("sync_operations.id"), nullable=False, index=True)
    school_id = Column(UUID(as_uuid=True), ForeignKey("schools.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default="PENDING")  # SchoolSyncStatus
    source_shape = Column(String(20))
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))

    # Progress counters
    students_synced = Column(Integer, default=0)
    records_fetched = Column(Integer, default=0)
    events_normalized = Column(Integer, default=0)
    records_rejected = Column(Integer, default=0)
    reconciliation_gaps = Column(Integer, default=0)
    events_inserted = Column(Integer, default=0)
    events_updated = Column(Integer, default=0)
    events_unchanged = Column(Integer, default=0)
    events_failed = Column(Integer, default=0)
    year_summaries = Column(Integer, default=0)

    # [school_id, ISO date] pairs whose events changed; drives incremental aggregation
    touched_dates = Column(JSONType, nullable=False, default=list)
    error_message = Column(Text)

    operation = relationship("SyncOperation", back_populates="schools")
    school = relationship("School")
