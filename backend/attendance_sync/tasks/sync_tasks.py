"""Sync orchestration tasks."""

import logging
from datetime import date, timedelta

from attendance_sync.tasks.celery_app import celery_app
from attendance_sync.config import get_settings
from attendance_sync.models.base import SyncSessionLocal
from attendance_sync.errors import OperationClaimedError, OverlappingOperationError
from attendance_sync.services.aggregator import TimelineAggregator
from attendance_sync.services.loader import BulkLoader
from attendance_sync.services.orchestrator import SyncOrchestrator, find_running_overlaps
from attendance_sync.services.reconciliation import replay_parked_events
from attendance_sync.sources.client import SISClient

logger = logging.getLogger(__name__)


def _overlap_error(running) -> OverlappingOperationError:
    return OverlappingOperationError(
        f"{len(running)} running operation(s) cover this scope",
        details={"operation_ids": [str(op.id) for op in running]},
    )


@celery_app.task(
    bind=True,
    name="attendance_sync.tasks.sync_tasks.run_sync_operation",
    max_retries=12,
)
def run_sync_operation(self, operation_id: str, resume: bool = False, force: bool = False):
    """Run (or resume) one SyncOperation. Retries later if its scope is busy."""
    db = SyncSessionLocal()
    try:
        with SISClient() as client:
            orchestrator = SyncOrchestrator(db, client)
            try:
                if resume:
                    operation = orchestrator.resume(operation_id, force=force)
                else:
                    operation = orchestrator.run(operation_id)
            except OverlappingOperationError as e:
                db.rollback()
                logger.warning(f"Operation {operation_id} overlaps a running one, retrying later: {e}")
                raise self.retry(exc=e, countdown=orchestrator.settings.overlap_retry_countdown)
            except OperationClaimedError as e:
                # Duplicate delivery of an operation another worker is running
                db.rollback()
                logger.warning(f"Not running operation {operation_id}: {e}")
                return {"operation_id": operation_id, "status": "already_claimed"}

        return {
            "operation_id": str(operation.id),
            "status": operation.status,
            "counters": operation.counters,
            "summaries_written": operation.summaries_written,
        }
    finally:
        db.close()


@celery_app.task(name="attendance_sync.tasks.sync_tasks.dispatch_daily_sync")
def dispatch_daily_sync():
    """Create and dispatch yesterday's sync for all active schools."""
    db = SyncSessionLocal()
    try:
        yesterday = date.today() - timedelta(days=1)
        with SISClient() as client:
            operation = SyncOrchestrator(db, client).create_operation(
                yesterday, yesterday, requested_by="beat",
            )
        run_sync_operation.delay(str(operation.id))
        logger.info(f"Dispatched daily sync {operation.id} for {yesterday}")
        return {"operation_id": str(operation.id), "date": yesterday.isoformat()}
    finally:
        db.close()


@celery_app.task(
    bind=True,
    name="attendance_sync.tasks.sync_tasks.recompute_timeline",
    max_retries=12,
)
def recompute_timeline(self, school_id: str | None = None, start: str | None = None, end: str | None = None):
    """Full rebuild of DailyGradeSummary rows for a school and/or date range."""
    db = SyncSessionLocal()
    try:
        start_date = date.fromisoformat(start) if start else None
        end_date = date.fromisoformat(end) if end else None

        running = find_running_overlaps(db, start_date, end_date, [school_id] if school_id else None)
        if running:
            db.rollback()
            logger.warning(f"Recompute deferred: {len(running)} running operation(s) overlap its scope")
            raise self.retry(exc=_overlap_error(running), countdown=get_settings().overlap_retry_countdown)

        rows = TimelineAggregator(db).recompute(school_id=school_id, start=start_date, end=end_date)
        logger.info(f"Recomputed {len(rows)} summary rows")
        return {"summaries": len(rows)}
    finally:
        db.close()


@celery_app.task(
    bind=True,
    name="attendance_sync.tasks.sync_tasks.replay_reconciliation_gaps",
    max_retries=12,
)
def replay_reconciliation_gaps(self):
    """Load parked attendance whose codes now resolve and refresh affected summaries."""
    db = SyncSessionLocal()
    try:
        # Parked rows can belong to any school and date
        running = find_running_overlaps(db)
        if running:
            db.rollback()
            logger.warning(f"Replay deferred: {len(running)} sync operation(s) running")
            raise self.retry(exc=_overlap_error(running), countdown=get_settings().overlap_retry_countdown)

        result = replay_parked_events(db, BulkLoader(db))
        summaries = 0
        if result.load is not None and result.load.touched:
            summaries = len(TimelineAggregator(db).recompute_incremental(result.load.touched))
        return {
            "gaps_resolved": result.gaps_resolved,
            "events_replayed": result.events_replayed,
            "events_still_parked": result.events_still_parked,
            "summaries": summaries,
        }
    finally:
        db.close()
