"""School registry API endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from attendance_sync.models.base import get_db
from attendance_sync.models.school import School
from attendance_sync.schemas.school import SchoolRead

router = APIRouter(prefix="/schools", tags=["schools"])


@router.get("", response_model=list[SchoolRead])
async def list_schools(
    db: AsyncSession = Depends(get_db),
    include_inactive: bool = Query(False),
):
    """Schools with their alias history, for display names and code lookups."""
    query = select(School).options(selectinload(School.aliases))
    if not include_inactive:
        query = query.where(School.is_active == True)  # noqa: E712
    result = await db.execute(query.order_by(School.code))
    return [SchoolRead.model_validate(s) for s in result.scalars().all()]
