"""Pydantic schemas package."""

from attendance_sync.schemas.school import SchoolAliasRead, SchoolRead
from attendance_sync.schemas.summary import (
    DailyGradeSummaryRead,
    DistrictGradeSummaryRead,
    RecomputeRequest,
    RecomputeResponse,
)
from attendance_sync.schemas.sync_operation import (
    SyncOperationCreate,
    SyncOperationDispatchResponse,
    SyncOperationRead,
    SyncOperationSchoolRead,
    SyncOperationSummary,
)

__all__ = [
    # School
    "SchoolAliasRead",
    "SchoolRead",
    # DailyGradeSummary
    "DailyGradeSummaryRead",
    "DistrictGradeSummaryRead",
    "RecomputeRequest",
    "RecomputeResponse",
    # SyncOperation
    "SyncOperationCreate",
    "SyncOperationDispatchResponse",
    "SyncOperationRead",
    "SyncOperationSchoolRead",
    "SyncOperationSummary",
]
