"""Sync operation API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from attendance_sync.models.base import get_db
from attendance_sync.models.sync_operation import SyncOperation
from attendance_sync.schemas.sync_operation import (
    SyncOperationCreate,
    SyncOperationDispatchResponse,
    SyncOperationRead,
    SyncOperationSummary,
)
from attendance_sync.services.orchestrator import SyncOrchestrator, is_stale

router = APIRouter(prefix="/operations", tags=["operations"])


async def _load_operation(db: AsyncSession, operation_id: UUID) -> SyncOperation:
    query = (
        select(SyncOperation)
        .options(selectinload(SyncOperation.schools))
        .where(SyncOperation.id == operation_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(query)
    operation = result.scalar_one_or_none()
    if not operation:
        raise HTTPException(status_code=404, detail="Operation not found")
    return operation


@router.post("", response_model=SyncOperationDispatchResponse, status_code=202)
async def start_operation(
    payload: SyncOperationCreate,
    db: AsyncSession = Depends(get_db),
):
    """Create a sync operation and queue it for a worker."""

    def _create(session):
        operation = SyncOrchestrator(session, client=None).create_operation(
            payload.start_date,
            payload.end_date,
            school_ids=payload.school_ids,
            requested_by=payload.requested_by or "api",
        )
        return operation.id

    try:
        operation_id = await db.run_sync(_create)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # Dispatch Celery task
    from attendance_sync.tasks.sync_tasks import run_sync_operation

    task = run_sync_operation.delay(str(operation_id))

    return SyncOperationDispatchResponse(
        message=f"Sync queued for {payload.start_date} to {payload.end_date}",
        task_id=task.id,
        operation_id=operation_id,
    )


@router.get("", response_model=list[SyncOperationSummary])
async def list_operations(
    db: AsyncSession = Depends(get_db),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    status: str | None = Query(None, description="Filter by status"),
):
    """List recent sync operations."""
    query = select(SyncOperation)
    if status:
        query = query.where(SyncOperation.status == status.upper())

    query = query.order_by(SyncOperation.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return [SyncOperationSummary.model_validate(op) for op in result.scalars().all()]


@router.get("/{operation_id}", response_model=SyncOperationRead)
async def get_operation(
    operation_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Status, counters and per-school progress of one operation."""
    operation = await _load_operation(db, operation_id)
    return SyncOperationRead.model_validate(operation)


@router.post("/{operation_id}/cancel", response_model=SyncOperationRead)
async def cancel_operation(
    operation_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Request cancellation; the worker stops before the next school."""
    await _load_operation(db, operation_id)

    def _cancel(session):
        SyncOrchestrator(session, client=None).request_cancel(operation_id)

    await db.run_sync(_cancel)
    operation = await _load_operation(db, operation_id)
    return SyncOperationRead.model_validate(operation)


@router.post("/{operation_id}/resume", response_model=SyncOperationDispatchResponse, status_code=202)
async def resume_operation(
    operation_id: UUID,
    db: AsyncSession = Depends(get_db),
    force: bool = Query(False, description="Take over a RUNNING operation even if it is still checkpointing"),
):
    """Queue an interrupted or partial operation to continue from its unfinished schools.

    A RUNNING operation whose worker stopped checkpointing is treated as orphaned
    and can be resumed; a live one needs ``force``.
    """
    operation = await _load_operation(db, operation_id)
    if operation.status == "SUCCEEDED":
        raise HTTPException(status_code=400, detail="Operation already succeeded")
    if operation.status == "RUNNING" and not (force or is_stale(operation)):
        raise HTTPException(status_code=409, detail="Operation is still running")

    from attendance_sync.tasks.sync_tasks import run_sync_operation

    task = run_sync_operation.delay(str(operation_id), resume=True, force=force)

    return SyncOperationDispatchResponse(
        message="Resume queued",
        task_id=task.id,
        operation_id=operation_id,
    )
