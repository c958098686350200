"""ORM models. Importing this package registers every table on ``Base.metadata``."""

from attendance_sync.models.base import Base
from attendance_sync.models.school import School, SchoolAlias
from attendance_sync.models.student import StudentIdentity
from attendance_sync.models.sync_operation import SyncOperation, SyncOperationSchool
from attendance_sync.models.attendance_event import AttendanceEvent
from attendance_sync.models.daily_grade_summary import DailyGradeSummary
from attendance_sync.models.district_grade_summary import DistrictGradeSummary
from attendance_sync.models.reconciliation_gap import ReconciliationGapRecord, ParkedAttendanceEvent
from attendance_sync.models.year_summary import AttendanceYearSummary

__all__ = [
    "Base",
    "School",
    "SchoolAlias",
    "StudentIdentity",
    "SyncOperation",
    "SyncOperationSchool",
    "AttendanceEvent",
    "DailyGradeSummary",
    "DistrictGradeSummary",
    "ReconciliationGapRecord",
    "ParkedAttendanceEvent",
    "AttendanceYearSummary",
]
