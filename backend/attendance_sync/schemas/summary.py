"""Pydantic schemas for DailyGradeSummary."""

from datetime import date
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class DailyGradeSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    school_id: UUID
    grade_level: int
    summary_date: date
    school_year: str
    total_students: int
    students_present: int
    students_absent: int
    tardy_count: int
    excused_absences: int
    unexcused_absences: int
    daily_absences: int
    cumulative_absences: int
    attendance_rate: float
    absence_rate: float
    includes_synthesized: bool = False


class DistrictGradeSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    grade_level: int
    summary_date: date
    school_year: str
    total_students: int
    students_present: int
    students_absent: int
    tardy_count: int
    excused_absences: int
    unexcused_absences: int
    daily_absences: int
    cumulative_absences: int
    attendance_rate: float
    absence_rate: float
    includes_synthesized: bool = False
    schools_count: int
    schools_included: list[UUID] = []


class RecomputeRequest(BaseModel):
    """Scope of a forced full recompute; empty means everything."""

    school_id: UUID | None = None
    start_date: date | None = None
    end_date: date | None = None


class RecomputeResponse(BaseModel):
    message: str
    task_id: str
