"""Sync orchestration: drives one SyncOperation through every target school.

State machine: PENDING -> RUNNING -> {SUCCEEDED, PARTIAL, FAILED}

Per school, sequentially:
1. Fetch the roster and sync StudentIdentity rows
2. Fetch attendance, falling back across endpoint shapes
3. Normalize, reconcile, record gaps
4. Load events (and year summaries)
5. Persist counters and touched dates, checkpoint

Aggregation runs once, after all schools, over the union of touched dates.
School-level failures mark the school FAILED and the run continues;
FatalAuthError stops the run. Progress lives on the SyncOperation rows, so an
interrupted run resumes from the first school that did not finish.

Usage:
    with SISClient() as client:
        orchestrator = SyncOrchestrator(db, client)
        operation = orchestrator.create_operation(date(2024, 8, 15), date(2024, 8, 30))
        orchestrator.run(operation.id)
"""

import logging
import uuid
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from attendance_sync.config import get_settings
from attendance_sync.enums import OperationStatus, SchoolSyncStatus, SourceShape
from attendance_sync.errors import (
    FatalAuthError,
    OperationClaimedError,
    OverlappingOperationError,
    SyncError,
    UnsupportedEndpoint,
)
from attendance_sync.models.school import School
from attendance_sync.models.sync_operation import SyncOperation, SyncOperationSchool
from attendance_sync.normalizers import normalize, synthesize_daily_events
from attendance_sync.services.aggregator import TimelineAggregator
from attendance_sync.services.enrollment import sync_enrollment
from attendance_sync.services.loader import BulkLoader
from attendance_sync.services.reconciliation import Reconciler, discard_superseded_parked, record_gaps
from attendance_sync.services.school_calendar import SchoolCalendar

logger = logging.getLogger(__name__)

# Per-school cap on detailed record-level errors copied onto the operation
MAX_RECORD_ERRORS = 20

COUNTER_FIELDS = (
    "students_synced",
    "records_fetched",
    "events_normalized",
    "records_rejected",
    "reconciliation_gaps",
    "events_inserted",
    "events_updated",
    "events_unchanged",
    "events_failed",
    "year_summaries",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# Postgres advisory lock serializing claims across workers
CLAIM_LOCK_KEY = 720_601


def is_stale(operation: SyncOperation, after: int | None = None, now: datetime | None = None) -> bool:
    """True for a RUNNING operation whose worker stopped checkpointing."""
    if operation.status != OperationStatus.RUNNING.value:
        return False
    last = operation.last_checkpoint_at or operation.started_at
    if last is None:
        return True
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    if after is None:
        after = get_settings().stale_operation_after
    return (now or _now()) - last > timedelta(seconds=after)


def find_running_overlaps(db, start: date | None = None, end: date | None = None, school_ids=None, exclude_id=None):
    """Live RUNNING operations whose window and schools intersect the given scope.

    ``None`` bounds and ``school_ids=None`` mean unbounded. Stale operations are ignored.
    """
    query = select(SyncOperation).where(SyncOperation.status == OperationStatus.RUNNING.value)
    if exclude_id is not None:
        query = query.where(SyncOperation.id != exclude_id)
    if end is not None:
        query = query.where(SyncOperation.start_date <= end)
    if start is not None:
        query = query.where(SyncOperation.end_date >= start)

    wanted = None if school_ids is None else {str(sid) for sid in school_ids}
    overlaps = []
    for other in db.execute(query).scalars():
        if is_stale(other):
            logger.warning(f"Ignoring stale running operation {other.id} (last checkpoint {other.last_checkpoint_at})")
            continue
        if wanted is None or wanted & set(other.target_school_ids or []):
            overlaps.append(other)
    return overlaps


class SyncOrchestrator:
    def __init__(self, db, client, calendar: SchoolCalendar | None = None):
        self.db = db
        self.client = client
        self.settings = get_settings()
        self.calendar = calendar or SchoolCalendar()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_operation(
        self,
        start_date: date,
        end_date: date,
        school_ids: list | None = None,
        requested_by: str | None = None,
    ) -> SyncOperation:
        """Create a PENDING operation over the given (or all active) schools. Commits."""
        if start_date > end_date:
            raise ValueError(f"start_date {start_date} is after end_date {end_date}")

        if school_ids:
            wanted = [sid if isinstance(sid, uuid.UUID) else uuid.UUID(str(sid)) for sid in school_ids]
            found = {
                s.id: s for s in self.db.execute(select(School).where(School.id.in_(wanted))).scalars()
            }
            missing = [str(sid) for sid in wanted if sid not in found]
            if missing:
                raise ValueError(f"Unknown schools: {missing}")
            inactive = [found[sid].code for sid in wanted if not found[sid].is_active]
            if inactive:
                raise ValueError(f"Schools are deactivated: {inactive}")
            schools = [found[sid] for sid in dict.fromkeys(wanted)]
        else:
            schools = self.db.execute(
                select(School).where(School.is_active == True).order_by(School.code)  # noqa: E712
            ).scalars().all()

        operation = SyncOperation(
            id=uuid.uuid4(),
            start_date=start_date,
            end_date=end_date,
            target_school_ids=[str(s.id) for s in schools],
            status=OperationStatus.PENDING.value,
            requested_by=requested_by,
            cancel_requested=False,
            counters={},
            errors=[],
        )
        self.db.add(operation)
        for position, school in enumerate(schools):
            operation.schools.append(SyncOperationSchool(
                id=uuid.uuid4(),
                school_id=school.id,
                position=position,
                status=SchoolSyncStatus.PENDING.value,
                touched_dates=[],
            ))
        self.db.commit()

        logger.info(
            f"Created operation {operation.id} for {len(schools)} schools, {start_date} to {end_date}"
        )
        return operation

    def claim(self, operation: SyncOperation) -> None:
        """Atomically move a PENDING operation to RUNNING.

        Raises OverlappingOperationError when a live running operation shares
        part of the (school, date) scope, and OperationClaimedError when another
        worker already holds this operation.
        """
        self._lock_claims()
        overlaps = find_running_overlaps(
            self.db,
            operation.start_date,
            operation.end_date,
            operation.target_school_ids or [],
            exclude_id=operation.id,
        )
        if overlaps:
            other = overlaps[0]
            shared = sorted(set(operation.target_school_ids or []) & set(other.target_school_ids or []))
            self.db.rollback()
            raise OverlappingOperationError(
                f"Operation {other.id} is already syncing {len(shared)} of these schools",
                details={"operation_id": str(other.id), "school_ids": shared},
            )

        claimed = self.db.execute(
            update(SyncOperation)
            .where(
                SyncOperation.id == operation.id,
                SyncOperation.status == OperationStatus.PENDING.value,
            )
            .values(
                status=OperationStatus.RUNNING.value,
                started_at=func.coalesce(SyncOperation.started_at, _now()),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if not claimed:
            self.db.rollback()
            raise OperationClaimedError(
                f"Operation {operation.id} is not pending; another worker holds it",
                details={"operation_id": str(operation.id)},
            )
        self.db.commit()
        self.db.refresh(operation)

    def _lock_claims(self) -> None:
        """Serialize claims for the rest of this transaction (Postgres only)."""
        if self.db.get_bind().dialect.name == "postgresql":
            self.db.execute(select(func.pg_advisory_xact_lock(CLAIM_LOCK_KEY)))

    def request_cancel(self, operation_id) -> SyncOperation:
        operation = self._get(operation_id)
        if not OperationStatus(operation.status).is_terminal:
            operation.cancel_requested = True
            self.db.commit()
            logger.info(f"Cancellation requested for operation {operation.id}")
        return operation

    def resume(self, operation_id, force: bool = False) -> SyncOperation:
        """Re-run an interrupted or partially failed operation from its unfinished schools.

        A RUNNING operation is taken over only when it is stale or ``force`` is set.
        """
        operation = self._get(operation_id)
        if operation.status == OperationStatus.RUNNING.value and not (force or is_stale(operation)):
            raise OperationClaimedError(
                f"Operation {operation.id} is still running (last checkpoint {operation.last_checkpoint_at})",
                details={"operation_id": str(operation.id)},
            )
        if operation.status == OperationStatus.RUNNING.value:
            logger.warning(f"Taking over running operation {operation.id} (force={force})")

        for entry in operation.schools:
            if entry.status != SchoolSyncStatus.SUCCEEDED.value:
                entry.status = SchoolSyncStatus.PENDING.value
                entry.error_message = None
        operation.status = OperationStatus.PENDING.value
        operation.cancel_requested = False
        operation.finished_at = None
        self.db.commit()
        logger.info(f"Resuming operation {operation.id}")
        return self.run(operation.id)

    def run(self, operation_id) -> SyncOperation:
        operation = self._get(operation_id)
        if OperationStatus(operation.status).is_terminal:
            logger.info(f"Operation {operation.id} already {operation.status}, nothing to do")
            return operation

        self.claim(operation)
        fatal = None

        for entry in operation.schools:
            if entry.status == SchoolSyncStatus.SUCCEEDED.value:
                continue

            self.db.refresh(operation, ["cancel_requested"])
            if operation.cancel_requested:
                self._skip_remaining(operation)
                logger.info(f"Operation {operation.id} cancelled")
                break

            try:
                self._sync_school(operation, entry)
            except FatalAuthError as e:
                self._fail_school(operation, entry, e)
                fatal = e
                break
            except SyncError as e:
                self._fail_school(operation, entry, e)
            except Exception as e:
                logger.exception(f"Unexpected error syncing school {entry.school_id}")
                self._fail_school(operation, entry, e)

            operation.last_checkpoint_at = _now()
            self.db.commit()
            logger.info(
                f"Checkpoint {operation.id}: school {entry.position + 1}/{len(operation.schools)} "
                f"{entry.status}"
            )

        self._aggregate(operation)
        self._finish(operation, fatal)
        return operation

    # ------------------------------------------------------------------
    # Per-school pipeline
    # ------------------------------------------------------------------

    def _sync_school(self, operation: SyncOperation, entry: SyncOperationSchool) -> None:
        school = self.db.get(School, entry.school_id)
        code = school.source_code

        entry.status = SchoolSyncStatus.RUNNING.value
        entry.started_at = _now()
        entry.finished_at = None
        for name in COUNTER_FIELDS:
            setattr(entry, name, 0)
        entry.touched_dates = []
        self.db.commit()

        roster = self.client.fetch_enrollment(code)
        enrollment = sync_enrollment(self.db, school, roster, as_of=operation.start_date)
        entry.students_synced = enrollment.synced
        entry.records_rejected = len(enrollment.errors)
        self.db.commit()

        responses = self._fetch_with_fallback(code, operation.start_date, operation.end_date)
        entry.source_shape = responses[0].shape.value

        events, year_summaries, errors = [], [], list(enrollment.errors)
        for response in responses:
            entry.records_fetched += len(response)
            result = normalize(
                response.records,
                response.shape,
                code,
                school.period_count,
                start_date=operation.start_date,
                end_date=operation.end_date,
                school_year=None if response.shape == SourceShape.DAY_LEVEL else response.school_year,
            )
            events.extend(result.events)
            year_summaries.extend(result.year_summaries)
            errors.extend(result.errors)
            entry.records_rejected += result.rejected

        if self.settings.synthesize_from_summary and year_summaries:
            events.extend(self._synthesize(year_summaries, school.period_count, operation))
        entry.events_normalized = len(events)

        outcome = Reconciler(self.db).reconcile(events, year_summaries)
        entry.reconciliation_gaps = len(outcome.gaps)
        record_gaps(self.db, outcome.gaps, operation.id)

        loader = BulkLoader(self.db)
        load = loader.upsert(outcome.resolved, operation_id=operation.id)
        errors.extend(load.errors)

        # Loaded batches are already committed; their dates must reach aggregation
        # even if a later step fails this school.
        entry.events_inserted = load.inserted
        entry.events_updated = load.updated
        entry.events_unchanged = load.unchanged
        entry.events_failed = load.failed
        entry.touched_dates = sorted([str(sid), day.isoformat()] for sid, day in load.touched)
        self.db.commit()

        discard_superseded_parked(self.db, outcome.resolved, load.failed_keys)
        entry.year_summaries = loader.upsert_year_summaries(outcome.year_summaries)
        entry.status = SchoolSyncStatus.SUCCEEDED.value
        entry.finished_at = _now()

        if errors:
            self._append_errors(operation, [
                {**e.to_dict(), "school_code": code} for e in errors[:MAX_RECORD_ERRORS]
            ])
        self.db.commit()

        logger.info(
            f"[{code}] {entry.records_fetched} fetched, {entry.events_normalized} normalized, "
            f"{entry.records_rejected} rejected, {entry.reconciliation_gaps} gaps, "
            f"{load.inserted} new, {load.updated} updated, {load.unchanged} unchanged, {load.failed} failed"
        )

    def _fetch_with_fallback(self, code: str, start: date, end: date) -> list:
        """Attendance from the first endpoint shape the source supports.

        History shapes are per school year, so a window spanning a year
        boundary yields one response per year.
        """
        tried = []
        for shape_name in self.settings.sis_source_shapes:
            shape = SourceShape(shape_name)
            try:
                if shape == SourceShape.DAY_LEVEL:
                    return [self.client.fetch_attendance(code, start, end, shape)]
                return [
                    self.client.fetch_attendance(code, seg_start, seg_end, shape)
                    for seg_start, seg_end in self._year_segments(start, end)
                ]
            except UnsupportedEndpoint:
                logger.info(f"[{code}] {shape.value} endpoint unsupported, trying next shape")
                tried.append(shape.value)

        raise UnsupportedEndpoint(
            f"No supported attendance endpoint for school {code}",
            details={"school_code": code, "shapes_tried": tried},
        )

    def _year_segments(self, start: date, end: date) -> list[tuple[date, date]]:
        segments = []
        current = start
        while current <= end:
            _, year_end = self.calendar.year_bounds(self.calendar.school_year(current))
            seg_end = min(year_end, end)
            segments.append((current, seg_end))
            current = date.fromordinal(seg_end.toordinal() + 1)
        return segments

    def _synthesize(self, year_summaries, period_count: int, operation: SyncOperation) -> list:
        events = []
        for summary in year_summaries:
            year_start, year_end = self.calendar.year_bounds(summary.school_year)
            school_days = self.calendar.school_days(year_start, year_end)
            events.extend(
                e for e in synthesize_daily_events(summary, school_days, period_count)
                if operation.start_date <= e.attendance_date <= operation.end_date
            )
        logger.info(f"Synthesized {len(events)} daily events from {len(year_summaries)} year summaries")
        return events

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _fail_school(self, operation: SyncOperation, entry: SyncOperationSchool, error: Exception) -> None:
        self.db.rollback()
        entry.status = SchoolSyncStatus.FAILED.value
        entry.finished_at = _now()
        entry.error_message = str(error)[:2000]

        if isinstance(error, SyncError):
            payload = error.to_dict()
        else:
            payload = {
                "category": "unexpected",
                "message": str(error)[:2000],
                "retryable": False,
                "details": {"type": error.__class__.__name__},
                "timestamp": _now().isoformat(),
            }
        payload["school_id"] = str(entry.school_id)
        self._append_errors(operation, [payload])
        self.db.commit()
        logger.error(f"School {entry.school_id} failed in operation {operation.id}: {error}")

    def _skip_remaining(self, operation: SyncOperation) -> None:
        for entry in operation.schools:
            if entry.status in (SchoolSyncStatus.PENDING.value, SchoolSyncStatus.RUNNING.value):
                entry.status = SchoolSyncStatus.SKIPPED.value
        self.db.commit()

    @staticmethod
    def _append_errors(operation: SyncOperation, payloads: list[dict]) -> None:
        # Reassign so the JSON column is flagged dirty
        operation.errors = list(operation.errors or []) + payloads

    def touched_scope(self, operation: SyncOperation) -> set[tuple[uuid.UUID, date]]:
        touched = set()
        for entry in operation.schools:
            for school_id, day in entry.touched_dates or []:
                touched.add((uuid.UUID(school_id), date.fromisoformat(day)))
        return touched

    def _aggregate(self, operation: SyncOperation) -> None:
        touched = self.touched_scope(operation)
        aggregator = TimelineAggregator(self.db, calendar=self.calendar)
        try:
            if self.settings.aggregation_mode == "full":
                rows = []
                for school_id in sorted({sid for sid, _ in touched}, key=str):
                    rows.extend(aggregator.recompute(school_id, operation.start_date, operation.end_date))
            else:
                rows = aggregator.recompute_incremental(touched)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Aggregation failed for operation {operation.id}: {e}")
            self._append_errors(operation, [{
                "category": "aggregation",
                "message": str(e)[:2000],
                "retryable": True,
                "details": {},
                "timestamp": _now().isoformat(),
            }])
            self.db.commit()
            return

        operation.summaries_written = len(rows)
        self.db.commit()

    def _finish(self, operation: SyncOperation, fatal: Exception | None) -> None:
        statuses = [entry.status for entry in operation.schools]
        succeeded = statuses.count(SchoolSyncStatus.SUCCEEDED.value)
        aggregation_failed = any(e.get("category") == "aggregation" for e in operation.errors or [])

        if fatal is not None or (statuses and succeeded == 0):
            status = OperationStatus.FAILED
        elif succeeded < len(statuses) or aggregation_failed:
            status = OperationStatus.PARTIAL
        else:
            status = OperationStatus.SUCCEEDED

        totals = {name: sum(getattr(entry, name) or 0 for entry in operation.schools) for name in COUNTER_FIELDS}
        totals["schools_succeeded"] = succeeded
        totals["schools_failed"] = statuses.count(SchoolSyncStatus.FAILED.value)
        totals["schools_skipped"] = statuses.count(SchoolSyncStatus.SKIPPED.value)

        operation.counters = totals
        operation.status = status.value
        operation.finished_at = _now()
        self.db.commit()

        logger.info(f"Operation {operation.id} finished {status.value}: {totals}")

    def _get(self, operation_id) -> SyncOperation:
        if not isinstance(operation_id, uuid.UUID):
            operation_id = uuid.UUID(str(operation_id))
        operation = self.db.get(SyncOperation, operation_id)
        if operation is None:
            raise ValueError(f"Operation {operation_id} not found")
        return operation
