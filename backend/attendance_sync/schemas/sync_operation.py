"""Pydantic schemas for SyncOperation models."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, model_validator


class SyncOperationCreate(BaseModel):
    """Fields for starting a sync."""

    start_date: date
    end_date: date
    school_ids: list[UUID] | None = None
    requested_by: str | None = None

    @model_validator(mode="after")
    def check_window(self) -> "SyncOperationCreate":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class SyncOperationSchoolRead(BaseModel):
    """Per-school progress within an operation."""

    model_config = ConfigDict(from_attributes=True)

    school_id: UUID
    position: int
    status: str
    source_shape: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    students_synced: int = 0
    records_fetched: int = 0
    events_normalized: int = 0
    records_rejected: int = 0
    reconciliation_gaps: int = 0
    events_inserted: int = 0
    events_updated: int = 0
    events_unchanged: int = 0
    events_failed: int = 0
    year_summaries: int = 0
    error_message: str | None = None


class SyncOperationSummary(BaseModel):
    """Minimal operation info for list views."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    start_date: date
    end_date: date
    status: str
    requested_by: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancel_requested: bool = False


class SyncOperationRead(SyncOperationSummary):
    """Full operation output."""

    target_school_ids: list[str] = []
    last_checkpoint_at: datetime | None = None
    counters: dict[str, Any] = {}
    errors: list[dict[str, Any]] = []
    summaries_written: int | None = 0
    schools: list[SyncOperationSchoolRead] = []


class SyncOperationDispatchResponse(BaseModel):
    """Response from queueing an operation."""

    message: str
    task_id: str | None = None
    operation_id: UUID
