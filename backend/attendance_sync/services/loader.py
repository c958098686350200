"""Bulk idempotent loader for attendance events.

Events are keyed by (canonical student id, attendance date). Re-loading the
same payload produces no writes: each row carries a content hash and rows
whose hash is unchanged are skipped. An OBSERVED event is never replaced by a
SYNTHESIZED one.

Each batch commits on its own. A batch that fails is retried record by
record inside savepoints so one bad row costs one LoadError, not the batch.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from attendance_sync.config import get_settings
from attendance_sync.enums import Provenance
from attendance_sync.errors import LoadError
from attendance_sync.models.attendance_event import AttendanceEvent
from attendance_sync.models.base import upsert_insert
from attendance_sync.models.year_summary import AttendanceYearSummary
from attendance_sync.services.reconciliation import ResolvedEvent, ResolvedYearSummary

logger = logging.getLogger(__name__)

# Columns rewritten when an existing (student, date) row changes
_UPDATE_COLUMNS = (
    "school_id",
    "grade_level",
    "presence_state",
    "period_states",
    "provenance",
    "source_shape",
    "source_student_id",
    "source_school_code",
    "all_day_code",
    "content_hash",
    "last_operation_id",
)


@dataclass
class LoadResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    batches: int = 0
    # (school_id, date) pairs whose events changed, old and new attribution
    touched: set[tuple[uuid.UUID, date]] = field(default_factory=set)
    failed_keys: set[tuple[date, str]] = field(default_factory=set)
    errors: list[LoadError] = field(default_factory=list)

    def merge(self, other: "LoadResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.failed += other.failed
        self.batches += other.batches
        self.touched |= other.touched
        self.failed_keys |= other.failed_keys
        self.errors.extend(other.errors)


def hash_event(event: ResolvedEvent) -> str:
    content = json.dumps(
        [
            str(event.school_id),
            event.grade_level,
            event.presence_state.value,
            list(event.period_states),
            event.provenance.value,
            event.source_shape.value,
            event.all_day_code or "",
        ],
        separators=(",", ":"),
    )
    return hashlib.sha256(content.encode()).hexdigest()


def _dedupe(events: list[ResolvedEvent]) -> list[ResolvedEvent]:
    """One event per (student, date); last wins, OBSERVED beats SYNTHESIZED."""
    chosen: dict[tuple[uuid.UUID, date], ResolvedEvent] = {}
    for event in events:
        key = (event.student_id, event.attendance_date)
        previous = chosen.get(key)
        if (
            previous is not None
            and previous.provenance == Provenance.OBSERVED
            and event.provenance == Provenance.SYNTHESIZED
        ):
            continue
        chosen[key] = event
    return list(chosen.values())


class BulkLoader:
    """Upserts ResolvedEvents in fixed-size batches."""

    def __init__(self, db, batch_size: int | None = None):
        self.db = db
        self.batch_size = batch_size or get_settings().load_batch_size

    def upsert(self, events: list[ResolvedEvent], operation_id=None) -> LoadResult:
        result = LoadResult()
        events = _dedupe(events)

        for i in range(0, len(events), self.batch_size):
            batch = events[i:i + self.batch_size]
            result.merge(self._load_batch(batch, operation_id))

        logger.info(
            f"Loaded {len(events)} events in {result.batches} batches: {result.inserted} inserted, "
            f"{result.updated} updated, {result.unchanged} unchanged, {result.failed} failed"
        )
        return result

    def _existing(self, batch: list[ResolvedEvent]) -> dict[tuple[uuid.UUID, date], tuple]:
        student_ids = {e.student_id for e in batch}
        dates = [e.attendance_date for e in batch]
        rows = self.db.execute(
            select(
                AttendanceEvent.student_id,
                AttendanceEvent.attendance_date,
                AttendanceEvent.content_hash,
                AttendanceEvent.provenance,
                AttendanceEvent.school_id,
            ).where(
                AttendanceEvent.student_id.in_(student_ids),
                AttendanceEvent.attendance_date.between(min(dates), max(dates)),
            )
        ).all()
        return {(r.student_id, r.attendance_date): (r.content_hash, r.provenance, r.school_id) for r in rows}

    def _load_batch(self, batch: list[ResolvedEvent], operation_id) -> LoadResult:
        result = LoadResult(batches=1)
        existing = self._existing(batch)

        to_write: list[tuple[ResolvedEvent, dict, bool]] = []
        for event in batch:
            content_hash = hash_event(event)
            current = existing.get((event.student_id, event.attendance_date))
            if current is not None:
                current_hash, current_provenance, current_school = current
                if current_hash == content_hash:
                    result.unchanged += 1
                    continue
                if current_provenance == Provenance.OBSERVED.value and event.provenance == Provenance.SYNTHESIZED:
                    result.unchanged += 1
                    continue
                result.touched.add((current_school, event.attendance_date))
            to_write.append((event, self._row(event, content_hash, operation_id), current is None))

        if not to_write:
            return result

        try:
            with self.db.begin_nested():
                self.db.execute(self._statement(), [row for _, row, _ in to_write])
            self.db.commit()
            for event, _, is_new in to_write:
                self._count_written(result, event, is_new)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Batch of {len(to_write)} events failed, retrying per record: {e}")
            self._load_records(to_write, result)

        return result

    def _load_records(self, to_write: list[tuple[ResolvedEvent, dict, bool]], result: LoadResult) -> None:
        for event, row, is_new in to_write:
            try:
                with self.db.begin_nested():
                    self.db.execute(self._statement(), [row])
            except SQLAlchemyError as e:
                result.failed += 1
                result.failed_keys.add((event.attendance_date, event.source_student_id))
                result.errors.append(LoadError(
                    f"Failed to load event: {e.__class__.__name__}",
                    details={
                        "student_id": str(event.student_id),
                        "source_student_id": event.source_student_id,
                        "date": event.attendance_date.isoformat(),
                        "error": str(e)[:500],
                    },
                ))
                continue
            self._count_written(result, event, is_new)
        self.db.commit()

    @staticmethod
    def _count_written(result: LoadResult, event: ResolvedEvent, is_new: bool) -> None:
        if is_new:
            result.inserted += 1
        else:
            result.updated += 1
        result.touched.add((event.school_id, event.attendance_date))

    @staticmethod
    def _row(event: ResolvedEvent, content_hash: str, operation_id) -> dict:
        return {
            "id": uuid.uuid4(),
            "student_id": event.student_id,
            "school_id": event.school_id,
            "grade_level": event.grade_level,
            "attendance_date": event.attendance_date,
            "presence_state": event.presence_state.value,
            "period_states": list(event.period_states),
            "provenance": event.provenance.value,
            "source_shape": event.source_shape.value,
            "source_student_id": event.source_student_id,
            "source_school_code": event.source_school_code,
            "all_day_code": event.all_day_code,
            "content_hash": content_hash,
            "last_operation_id": operation_id,
        }

    def _statement(self):
        table = AttendanceEvent.__table__
        ins = upsert_insert(self.db, table)
        set_ = {name: ins.excluded[name] for name in _UPDATE_COLUMNS}
        set_["updated_at"] = func.now()
        return ins.on_conflict_do_update(
            index_elements=[table.c.student_id, table.c.attendance_date],
            set_=set_,
            # Never let a synthesized row replace an observed one
            where=or_(
                table.c.provenance != Provenance.OBSERVED.value,
                ins.excluded.provenance == Provenance.OBSERVED.value,
            ),
        )

    def upsert_year_summaries(self, summaries: list[ResolvedYearSummary]) -> int:
        """Store summary-shape totals keyed by (student, school, school year). Commits."""
        if not summaries:
            return 0
        table = AttendanceYearSummary.__table__
        rows = {}
        for s in summaries:
            rows[(s.student_id, s.school_id, s.record.school_year)] = {
                "id": uuid.uuid4(),
                "student_id": s.student_id,
                "school_id": s.school_id,
                "school_year": s.record.school_year,
                "days_enrolled": s.record.days_enrolled,
                "days_present": s.record.days_present,
                "days_absent": s.record.days_absent,
            }
        ins = upsert_insert(self.db, table)
        stmt = ins.on_conflict_do_update(
            index_elements=[table.c.student_id, table.c.school_id, table.c.school_year],
            set_={
                "days_enrolled": ins.excluded.days_enrolled,
                "days_present": ins.excluded.days_present,
                "days_absent": ins.excluded.days_absent,
                "updated_at": func.now(),
            },
        )
        self.db.execute(stmt, list(rows.values()))
        self.db.commit()
        return len(rows)
