"""Timeline aggregation: per (school, grade, date) attendance summaries.

DailyGradeSummary rows are derived entirely from AttendanceEvent. Two modes
share the same per-day computation and the same cumulative re-derivation:

- ``recompute`` rebuilds every row in a (school, date range) scope and drops
  rows whose events are gone.
- ``recompute_incremental`` rebuilds only the (school, date) pairs a load
  touched, then rolls cumulative absences forward from the earliest one.

Cumulative absences are a prefix sum per (school, grade) ordered by date and
reset at the school-year boundary. Non-school days never get a row.

DistrictGradeSummary rows roll the school rows up per (grade, date) and are
refreshed for every date either mode touched, with the same cumulative rule.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date

from sqlalchemy import delete, func, select

from attendance_sync.config import get_settings
from attendance_sync.enums import PresenceState, Provenance
from attendance_sync.models.attendance_event import AttendanceEvent
from attendance_sync.models.base import upsert_insert
from attendance_sync.models.daily_grade_summary import DailyGradeSummary
from attendance_sync.models.district_grade_summary import DistrictGradeSummary
from attendance_sync.services.school_calendar import SchoolCalendar

logger = logging.getLogger(__name__)

PRESENT_STATES = {PresenceState.PRESENT.value, PresenceState.TARDY.value, PresenceState.PARTIAL.value}

_CHUNK = 500


@dataclass
class DayCounts:
    total: int = 0
    present: int = 0
    absent: int = 0
    tardy: int = 0
    excused: int = 0
    unexcused: int = 0
    synthesized: bool = False

    def add(self, presence_state: str, provenance: str) -> None:
        self.total += 1
        if presence_state in PRESENT_STATES:
            self.present += 1
        else:
            self.absent += 1
        if presence_state == PresenceState.TARDY.value:
            self.tardy += 1
        elif presence_state == PresenceState.ABSENT_EXCUSED.value:
            self.excused += 1
        elif presence_state == PresenceState.ABSENT_UNEXCUSED.value:
            self.unexcused += 1
        if provenance == Provenance.SYNTHESIZED.value:
            self.synthesized = True


def rate(part: int, total: int) -> float:
    if total == 0:
        return 100.0
    return round(part / total * 100, 2)


class TimelineAggregator:
    def __init__(self, db, calendar: SchoolCalendar | None = None, include_synthesized: bool | None = None):
        self.db = db
        self.calendar = calendar or SchoolCalendar()
        if include_synthesized is None:
            include_synthesized = get_settings().include_synthesized_in_aggregates
        self.include_synthesized = include_synthesized

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def recompute(self, school_id=None, start: date | None = None, end: date | None = None) -> list[DailyGradeSummary]:
        """Full rebuild of every summary row in scope."""
        school_ids = [_as_uuid(school_id)] if school_id else self._schools_in_scope(start, end)
        affected: set[date] = set()

        for sid in school_ids:
            counts = self._count_range(sid, start, end)

            stale = select(DailyGradeSummary.id, DailyGradeSummary.grade_level, DailyGradeSummary.summary_date).where(
                DailyGradeSummary.school_id == sid
            )
            if start:
                stale = stale.where(DailyGradeSummary.summary_date >= start)
            if end:
                stale = stale.where(DailyGradeSummary.summary_date <= end)
            existing = self.db.execute(stale).all()
            doomed = [r.id for r in existing if (r.grade_level, r.summary_date) not in counts]

            self._write(sid, counts)
            self._delete_ids(doomed)

            grades = {g for g, _ in counts} | {r.grade_level for r in existing}
            dates = [d for _, d in counts] + [r.summary_date for r in existing]
            if start:
                dates.append(start)
            self._roll_forward(sid, grades, dates)
            self.db.commit()
            affected.update(dates)

            logger.info(f"Full recompute for school {sid}: {len(counts)} rows written, {len(doomed)} removed")

        self.refresh_district(affected)
        self.db.commit()

        return self._rows_in_scope(school_ids, start, end)

    def recompute_incremental(self, touched) -> list[DailyGradeSummary]:
        """Rebuild only the touched (school_id, date) pairs and roll cumulative forward."""
        by_school: dict[uuid.UUID, set[date]] = defaultdict(set)
        for school_id, day in touched:
            by_school[_as_uuid(school_id)].add(day)

        written: list[DailyGradeSummary] = []
        affected: set[date] = set()
        for sid, days in by_school.items():
            days = sorted(days)
            counts = self._count_days(sid, days)

            existing = []
            for i in range(0, len(days), _CHUNK):
                existing.extend(self.db.execute(
                    select(DailyGradeSummary.id, DailyGradeSummary.grade_level, DailyGradeSummary.summary_date).where(
                        DailyGradeSummary.school_id == sid,
                        DailyGradeSummary.summary_date.in_(days[i:i + _CHUNK]),
                    )
                ).all())
            doomed = [r.id for r in existing if (r.grade_level, r.summary_date) not in counts]

            self._write(sid, counts)
            self._delete_ids(doomed)

            grades = {g for g, _ in counts} | {r.grade_level for r in existing}
            self._roll_forward(sid, grades, days)
            self.db.commit()

            logger.info(
                f"Incremental recompute for school {sid}: {len(days)} dates, "
                f"{len(counts)} rows written, {len(doomed)} removed"
            )
            written.extend(self._rows_for_days(sid, days))
            affected.update(days)

        self.refresh_district(affected)
        self.db.commit()

        return written

    # ------------------------------------------------------------------
    # Counting
    # ------------------------------------------------------------------

    def _event_query(self, school_id):
        query = select(
            AttendanceEvent.grade_level,
            AttendanceEvent.attendance_date,
            AttendanceEvent.presence_state,
            AttendanceEvent.provenance,
        ).where(AttendanceEvent.school_id == school_id)
        if not self.include_synthesized:
            query = query.where(AttendanceEvent.provenance == Provenance.OBSERVED.value)
        return query

    def _tally(self, rows, counts: dict[tuple[int, date], DayCounts]) -> None:
        for row in rows:
            if not self.calendar.is_school_day(row.attendance_date):
                continue
            key = (row.grade_level, row.attendance_date)
            if key not in counts:
                counts[key] = DayCounts()
            counts[key].add(row.presence_state, row.provenance)

    def _count_range(self, school_id, start, end) -> dict[tuple[int, date], DayCounts]:
        query = self._event_query(school_id)
        if start:
            query = query.where(AttendanceEvent.attendance_date >= start)
        if end:
            query = query.where(AttendanceEvent.attendance_date <= end)
        counts: dict[tuple[int, date], DayCounts] = {}
        self._tally(self.db.execute(query), counts)
        return counts

    def _count_days(self, school_id, days: list[date]) -> dict[tuple[int, date], DayCounts]:
        counts: dict[tuple[int, date], DayCounts] = {}
        for i in range(0, len(days), _CHUNK):
            query = self._event_query(school_id).where(AttendanceEvent.attendance_date.in_(days[i:i + _CHUNK]))
            self._tally(self.db.execute(query), counts)
        return counts

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _write(self, school_id, counts: dict[tuple[int, date], DayCounts]) -> None:
        if not counts:
            return
        table = DailyGradeSummary.__table__
        rows = []
        for (grade, day), c in counts.items():
            rows.append({
                "id": uuid.uuid4(),
                "school_id": school_id,
                "grade_level": grade,
                "summary_date": day,
                "school_year": self.calendar.school_year(day),
                "total_students": c.total,
                "students_present": c.present,
                "students_absent": c.absent,
                "tardy_count": c.tardy,
                "excused_absences": c.excused,
                "unexcused_absences": c.unexcused,
                "daily_absences": c.absent,
                "cumulative_absences": 0,
                "attendance_rate": rate(c.present, c.total),
                "absence_rate": rate(c.absent, c.total) if c.total else 0.0,
                "includes_synthesized": c.synthesized,
            })

        ins = upsert_insert(self.db, table)
        updatable = (
            "school_year", "total_students", "students_present", "students_absent", "tardy_count",
            "excused_absences", "unexcused_absences", "daily_absences", "attendance_rate",
            "absence_rate", "includes_synthesized",
        )
        set_ = {name: ins.excluded[name] for name in updatable}
        set_["updated_at"] = func.now()
        stmt = ins.on_conflict_do_update(
            index_elements=[table.c.school_id, table.c.grade_level, table.c.summary_date],
            set_=set_,
        )
        for i in range(0, len(rows), _CHUNK):
            self.db.execute(stmt, rows[i:i + _CHUNK])

    def _delete_ids(self, ids: list) -> None:
        for i in range(0, len(ids), _CHUNK):
            self.db.execute(delete(DailyGradeSummary).where(DailyGradeSummary.id.in_(ids[i:i + _CHUNK])))

    def _first_by_year(self, dates) -> list[date]:
        first_by_year: dict[str, date] = {}
        for day in dates:
            label = self.calendar.school_year(day)
            if label not in first_by_year or day < first_by_year[label]:
                first_by_year[label] = day
        return list(first_by_year.values())

    def _roll_forward(self, school_id, grades, dates) -> None:
        """Re-derive cumulative absences from the earliest changed date of each school year."""
        firsts = self._first_by_year(dates)
        for grade in grades:
            for first in firsts:
                self._rederive_cumulative(
                    DailyGradeSummary,
                    (DailyGradeSummary.school_id == school_id, DailyGradeSummary.grade_level == grade),
                    first,
                )

    def _rederive_cumulative(self, model, series, from_date: date) -> None:
        """Roll cumulative absences forward from ``from_date`` to the end of its school year."""
        self.db.flush()
        same_series = (*series, model.school_year == self.calendar.school_year(from_date))

        base = self.db.execute(
            select(model.cumulative_absences)
            .where(*same_series, model.summary_date < from_date)
            .order_by(model.summary_date.desc())
            .limit(1)
        ).scalar() or 0

        rows = self.db.execute(
            select(model)
            .where(*same_series, model.summary_date >= from_date)
            .order_by(model.summary_date)
            .execution_options(populate_existing=True)
        ).scalars().all()

        running = base
        for row in rows:
            running += row.daily_absences
            row.cumulative_absences = running
        self.db.flush()

    # ------------------------------------------------------------------
    # District rollup
    # ------------------------------------------------------------------

    def refresh_district(self, dates) -> list[DistrictGradeSummary]:
        """Rebuild district rows for ``dates`` from the school rows and roll cumulative forward.

        Does not commit; both recompute modes commit after calling it.
        """
        days = sorted(set(dates))
        if not days:
            return []
        self.db.flush()

        totals: dict[tuple[int, date], DayCounts] = {}
        schools: dict[tuple[int, date], set[str]] = defaultdict(set)
        existing = []
        for i in range(0, len(days), _CHUNK):
            chunk = days[i:i + _CHUNK]
            rows = self.db.execute(
                select(
                    DailyGradeSummary.school_id,
                    DailyGradeSummary.grade_level,
                    DailyGradeSummary.summary_date,
                    DailyGradeSummary.total_students,
                    DailyGradeSummary.students_present,
                    DailyGradeSummary.students_absent,
                    DailyGradeSummary.tardy_count,
                    DailyGradeSummary.excused_absences,
                    DailyGradeSummary.unexcused_absences,
                    DailyGradeSummary.includes_synthesized,
                ).where(DailyGradeSummary.summary_date.in_(chunk))
            )
            for row in rows:
                key = (row.grade_level, row.summary_date)
                if key not in totals:
                    totals[key] = DayCounts()
                c = totals[key]
                c.total += row.total_students
                c.present += row.students_present
                c.absent += row.students_absent
                c.tardy += row.tardy_count
                c.excused += row.excused_absences
                c.unexcused += row.unexcused_absences
                c.synthesized = c.synthesized or bool(row.includes_synthesized)
                schools[key].add(str(row.school_id))

            existing.extend(self.db.execute(
                select(DistrictGradeSummary.id, DistrictGradeSummary.grade_level, DistrictGradeSummary.summary_date)
                .where(DistrictGradeSummary.summary_date.in_(chunk))
            ).all())

        doomed = [r.id for r in existing if (r.grade_level, r.summary_date) not in totals]
        self._write_district(totals, schools)
        for i in range(0, len(doomed), _CHUNK):
            self.db.execute(delete(DistrictGradeSummary).where(DistrictGradeSummary.id.in_(doomed[i:i + _CHUNK])))

        grades = {g for g, _ in totals} | {r.grade_level for r in existing}
        firsts = self._first_by_year(days)
        for grade in grades:
            for first in firsts:
                self._rederive_cumulative(DistrictGradeSummary, (DistrictGradeSummary.grade_level == grade,), first)

        logger.info(f"District rollup: {len(totals)} rows written, {len(doomed)} removed over {len(days)} dates")
        written = []
        for i in range(0, len(days), _CHUNK):
            written.extend(self.db.execute(
                select(DistrictGradeSummary)
                .where(DistrictGradeSummary.summary_date.in_(days[i:i + _CHUNK]))
                .order_by(DistrictGradeSummary.grade_level, DistrictGradeSummary.summary_date)
            ).scalars())
        return written

    def _write_district(self, totals: dict[tuple[int, date], DayCounts], schools) -> None:
        if not totals:
            return
        table = DistrictGradeSummary.__table__
        rows = [
            {
                "id": uuid.uuid4(),
                "grade_level": grade,
                "summary_date": day,
                "school_year": self.calendar.school_year(day),
                "total_students": c.total,
                "students_present": c.present,
                "students_absent": c.absent,
                "tardy_count": c.tardy,
                "excused_absences": c.excused,
                "unexcused_absences": c.unexcused,
                "daily_absences": c.absent,
                "cumulative_absences": 0,
                "attendance_rate": rate(c.present, c.total),
                "absence_rate": rate(c.absent, c.total) if c.total else 0.0,
                "includes_synthesized": c.synthesized,
                "schools_count": len(schools[(grade, day)]),
                "schools_included": sorted(schools[(grade, day)]),
            }
            for (grade, day), c in totals.items()
        ]
        ins = upsert_insert(self.db, table)
        updatable = (
            "school_year", "total_students", "students_present", "students_absent", "tardy_count",
            "excused_absences", "unexcused_absences", "daily_absences", "attendance_rate",
            "absence_rate", "includes_synthesized", "schools_count", "schools_included",
        )
        set_ = {name: ins.excluded[name] for name in updatable}
        set_["updated_at"] = func.now()
        stmt = ins.on_conflict_do_update(
            index_elements=[table.c.grade_level, table.c.summary_date],
            set_=set_,
        )
        for i in range(0, len(rows), _CHUNK):
            self.db.execute(stmt, rows[i:i + _CHUNK])

    # ------------------------------------------------------------------
    # Scope helpers
    # ------------------------------------------------------------------

    def _schools_in_scope(self, start, end) -> list:
        ids = set()
        for model, column in (
            (AttendanceEvent, AttendanceEvent.attendance_date),
            (DailyGradeSummary, DailyGradeSummary.summary_date),
        ):
            query = select(model.school_id).distinct()
            if start:
                query = query.where(column >= start)
            if end:
                query = query.where(column <= end)
            ids.update(self.db.execute(query).scalars())
        return sorted(ids, key=str)

    def _rows_in_scope(self, school_ids, start, end) -> list[DailyGradeSummary]:
        if not school_ids:
            return []
        query = select(DailyGradeSummary).where(DailyGradeSummary.school_id.in_(school_ids))
        if start:
            query = query.where(DailyGradeSummary.summary_date >= start)
        if end:
            query = query.where(DailyGradeSummary.summary_date <= end)
        query = query.order_by(DailyGradeSummary.school_id, DailyGradeSummary.grade_level, DailyGradeSummary.summary_date)
        return list(self.db.execute(query).scalars())

    def _rows_for_days(self, school_id, days: list[date]) -> list[DailyGradeSummary]:
        rows = []
        for i in range(0, len(days), _CHUNK):
            rows.extend(self.db.execute(
                select(DailyGradeSummary)
                .where(
                    DailyGradeSummary.school_id == school_id,
                    DailyGradeSummary.summary_date.in_(days[i:i + _CHUNK]),
                )
                .order_by(DailyGradeSummary.grade_level, DailyGradeSummary.summary_date)
            ).scalars())
        return rows


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
