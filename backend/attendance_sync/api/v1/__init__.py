"""API v1 router aggregation."""

from fastapi import APIRouter

from attendance_sync.api.v1.operations import router as operations_router
from attendance_sync.api.v1.summaries import router as summaries_router
from attendance_sync.api.v1.schools import router as schools_router

router = APIRouter(prefix="/api/v1")

router.include_router(operations_router)
router.include_router(summaries_router)
router.include_router(schools_router)
