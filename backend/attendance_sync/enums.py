"""Shared enumerations stored as strings in the database."""

import enum


class PresenceState(str, enum.Enum):
    PRESENT = "PRESENT"
    ABSENT_EXCUSED = "ABSENT_EXCUSED"
    ABSENT_UNEXCUSED = "ABSENT_UNEXCUSED"
    PARTIAL = "PARTIAL"
    TARDY = "TARDY"

    @property
    def is_absent(self) -> bool:
        return self in (PresenceState.ABSENT_EXCUSED, PresenceState.ABSENT_UNEXCUSED)


class Provenance(str, enum.Enum):
    OBSERVED = "OBSERVED"
    SYNTHESIZED = "SYNTHESIZED"


class SourceShape(str, enum.Enum):
    """Endpoint families exposing the same attendance data."""

    DAY_LEVEL = "day_level"
    DETAIL_HISTORY = "detail_history"
    SUMMARY = "summary"


class OperationStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.SUCCEEDED, OperationStatus.FAILED, OperationStatus.PARTIAL)


class SchoolSyncStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class GapKind(str, enum.Enum):
    SCHOOL = "school"
    STUDENT = "student"
