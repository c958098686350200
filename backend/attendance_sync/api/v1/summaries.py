"""Daily grade summary API endpoints: the read surface for consumers."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_sync.models.base import get_db
from attendance_sync.models.daily_grade_summary import DailyGradeSummary
from attendance_sync.models.district_grade_summary import DistrictGradeSummary
from attendance_sync.schemas.summary import (
    DailyGradeSummaryRead,
    DistrictGradeSummaryRead,
    RecomputeRequest,
    RecomputeResponse,
)

router = APIRouter(prefix="/summaries", tags=["summaries"])


@router.get("", response_model=list[DailyGradeSummaryRead])
async def list_summaries(
    db: AsyncSession = Depends(get_db),
    school_id: UUID | None = Query(None, description="Filter by school"),
    grade_level: int | None = Query(None, description="Filter by grade (K=0, TK=-1)"),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    school_year: str | None = Query(None, description="e.g. 2024-2025"),
    skip: int = Query(0, ge=0),
    limit: int = Query(500, ge=1, le=5000),
):
    """Daily attendance by school, grade and date."""
    query = select(DailyGradeSummary)

    if school_id:
        query = query.where(DailyGradeSummary.school_id == school_id)
    if grade_level is not None:
        query = query.where(DailyGradeSummary.grade_level == grade_level)
    if start_date:
        query = query.where(DailyGradeSummary.summary_date >= start_date)
    if end_date:
        query = query.where(DailyGradeSummary.summary_date <= end_date)
    if school_year:
        query = query.where(DailyGradeSummary.school_year == school_year)

    query = query.order_by(
        DailyGradeSummary.school_id,
        DailyGradeSummary.grade_level,
        DailyGradeSummary.summary_date,
    ).offset(skip).limit(limit)

    result = await db.execute(query)
    return [DailyGradeSummaryRead.model_validate(row) for row in result.scalars().all()]


@router.post("/recompute", response_model=RecomputeResponse, status_code=202)
async def recompute_summaries(payload: RecomputeRequest):
    """Queue a full rebuild of summaries in scope."""
    from attendance_sync.tasks.sync_tasks import recompute_timeline

    task = recompute_timeline.delay(
        str(payload.school_id) if payload.school_id else None,
        payload.start_date.isoformat() if payload.start_date else None,
        payload.end_date.isoformat() if payload.end_date else None,
    )
    return RecomputeResponse(message="Recompute queued", task_id=task.id)


@router.get("/district", response_model=list[DistrictGradeSummaryRead])
async def list_district_summaries(
    db: AsyncSession = Depends(get_db),
    grade_level: int | None = Query(None, description="Filter by grade (K=0, TK=-1)"),
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    school_year: str | None = Query(None, description="e.g. 2024-2025"),
    skip: int = Query(0, ge=0),
    limit: int = Query(500, ge=1, le=5000),
):
    """District-wide attendance by grade and date, rolled up across schools."""
    query = select(DistrictGradeSummary)

    if grade_level is not None:
        query = query.where(DistrictGradeSummary.grade_level == grade_level)
    if start_date:
        query = query.where(DistrictGradeSummary.summary_date >= start_date)
    if end_date:
        query = query.where(DistrictGradeSummary.summary_date <= end_date)
    if school_year:
        query = query.where(DistrictGradeSummary.school_year == school_year)

    query = query.order_by(
        DistrictGradeSummary.grade_level,
        DistrictGradeSummary.summary_date,
    ).offset(skip).limit(limit)

    result = await db.execute(query)
    return [DistrictGradeSummaryRead.model_validate(row) for row in result.scalars().all()]
