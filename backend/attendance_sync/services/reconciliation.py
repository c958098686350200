"""Identifier reconciliation between the SIS and canonical local ids.

Resolution order for a school code:
1. Exact match against active aliases and canonical school codes
2. Match on the normalized form (trimmed, leading zeros stripped)
3. Otherwise a ReconciliationGap, never a guess

Zero-padded codes (``"001"`` in attendance payloads, ``"1"`` in the school
registry) are the recurring drift this layer absorbs. Fixing a mapping is an
explicit administrative call (``add_alias`` / ``correct_alias``), never a side
effect of ingestion.

Usage:
    from attendance_sync.services.reconciliation import Reconciler

    reconciler = Reconciler(db)
    outcome = reconciler.reconcile(normalized.events)
    record_gaps(db, outcome.gaps, operation_id)
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import and_, delete, func, or_, select

from attendance_sync.enums import GapKind, PresenceState, Provenance, SourceShape
from attendance_sync.errors import AliasConflictError, ReconciliationGap
from attendance_sync.models.reconciliation_gap import ParkedAttendanceEvent, ReconciliationGapRecord
from attendance_sync.models.school import School, SchoolAlias
from attendance_sync.models.student import StudentIdentity
from attendance_sync.normalizers.base import NormalizedEvent, YearSummaryRecord

logger = logging.getLogger(__name__)


def normalize_code(code) -> str:
    """Canonical comparison form of a source code: trimmed, no leading zeros."""
    text = "" if code is None else str(code).strip()
    if not text:
        return ""
    stripped = text.lstrip("0")
    return stripped or "0"


@dataclass(frozen=True)
class StudentRef:
    canonical_student_id: uuid.UUID
    school_id: uuid.UUID
    grade_level: int


@dataclass(frozen=True)
class ResolvedEvent:
    """A NormalizedEvent attributed to canonical school and student ids."""

    student_id: uuid.UUID
    school_id: uuid.UUID
    grade_level: int
    attendance_date: date
    presence_state: PresenceState
    period_states: tuple[str | None, ...]
    provenance: Provenance
    source_shape: SourceShape
    source_student_id: str
    source_school_code: str
    all_day_code: str | None = None


@dataclass(frozen=True)
class ResolvedYearSummary:
    student_id: uuid.UUID
    school_id: uuid.UUID
    record: YearSummaryRecord


@dataclass
class ReconcileOutcome:
    resolved: list[ResolvedEvent] = field(default_factory=list)
    year_summaries: list[ResolvedYearSummary] = field(default_factory=list)
    # (gap, event) pairs; event is None for gaps raised by year summaries
    gaps: list[tuple[ReconciliationGap, NormalizedEvent | None]] = field(default_factory=list)

    @property
    def gap_count(self) -> int:
        return len(self.gaps)


class SchoolResolver:
    """In-memory index over active schools and aliases."""

    def __init__(self, db):
        self.db = db
        self.refresh()

    def refresh(self) -> None:
        self._exact: dict[str, set[uuid.UUID]] = defaultdict(set)
        self._normalized: dict[str, set[uuid.UUID]] = defaultdict(set)

        schools = self.db.execute(select(School).where(School.is_active == True)).scalars().all()  # noqa: E712
        active_ids = {s.id for s in schools}
        for school in schools:
            self._exact[school.code].add(school.id)
            self._normalized[normalize_code(school.code)].add(school.id)

        aliases = self.db.execute(select(SchoolAlias).where(SchoolAlias.is_active == True)).scalars().all()  # noqa: E712
        for alias in aliases:
            if alias.school_id not in active_ids:
                continue
            self._exact[alias.code].add(alias.school_id)
            self._normalized[alias.normalized_code].add(alias.school_id)

    def resolve_school(self, source_code) -> uuid.UUID:
        """Canonical school id for a source code, or raise ReconciliationGap."""
        raw = "" if source_code is None else str(source_code)
        exact = self._exact.get(raw.strip())
        if exact and len(exact) == 1:
            return next(iter(exact))

        normalized = normalize_code(raw)
        candidates = self._normalized.get(normalized) if normalized else None
        if candidates and len(candidates) == 1:
            return next(iter(candidates))

        if candidates:
            raise ReconciliationGap(
                GapKind.SCHOOL.value, raw,
                f"School code {raw!r} is ambiguous across {len(candidates)} schools",
                details={"candidates": sorted(str(c) for c in candidates)},
            )
        raise ReconciliationGap(GapKind.SCHOOL.value, raw)


class StudentResolver:
    """Looks up current or historical StudentIdentity rows by source id."""

    def __init__(self, db):
        self.db = db
        self._cache: dict[str, list[StudentIdentity]] = {}

    def preload(self, source_student_ids) -> None:
        wanted = {str(s) for s in source_student_ids} - set(self._cache)
        if not wanted:
            return
        ids = sorted(wanted)
        for i in range(0, len(ids), 500):
            chunk = ids[i:i + 500]
            rows = self.db.execute(
                select(StudentIdentity).where(StudentIdentity.source_student_id.in_(chunk))
            ).scalars().all()
            for sid in chunk:
                self._cache.setdefault(sid, [])
            for row in rows:
                self._cache[row.source_student_id].append(row)

    def resolve_student(self, source_student_id, on_date: date | None = None) -> StudentRef:
        """Identity in effect on ``on_date`` (or the current one), else ReconciliationGap."""
        sid = "" if source_student_id is None else str(source_student_id).strip()
        self.preload([sid])
        rows = self._cache.get(sid) or []

        chosen = None
        if on_date is not None:
            for row in rows:
                if row.effective_from <= on_date and (row.effective_to is None or on_date < row.effective_to):
                    chosen = row
                    break
        if chosen is None:
            chosen = next((r for r in rows if r.is_current), None)
        if chosen is None:
            raise ReconciliationGap(GapKind.STUDENT.value, sid)

        return StudentRef(
            canonical_student_id=chosen.canonical_student_id,
            school_id=chosen.school_id,
            grade_level=chosen.grade_level,
        )


class Reconciler:
    """Attributes normalized attendance to canonical ids. Read-only."""

    def __init__(self, db):
        self.db = db
        self.schools = SchoolResolver(db)
        self.students = StudentResolver(db)

    def reconcile(
        self,
        events: list[NormalizedEvent],
        year_summaries: list[YearSummaryRecord] | None = None,
    ) -> ReconcileOutcome:
        outcome = ReconcileOutcome()
        self.students.preload({e.source_student_id for e in events})
        if year_summaries:
            self.students.preload({s.source_student_id for s in year_summaries})

        for event in events:
            try:
                school_id = self.schools.resolve_school(event.source_school_code)
                student = self.students.resolve_student(event.source_student_id, event.attendance_date)
            except ReconciliationGap as gap:
                outcome.gaps.append((gap, event))
                continue

            outcome.resolved.append(ResolvedEvent(
                student_id=student.canonical_student_id,
                school_id=school_id,
                grade_level=student.grade_level,
                attendance_date=event.attendance_date,
                presence_state=event.presence_state,
                period_states=event.period_states,
                provenance=event.provenance,
                source_shape=event.source_shape,
                source_student_id=event.source_student_id,
                source_school_code=event.source_school_code,
                all_day_code=event.all_day_code,
            ))

        for summary in year_summaries or []:
            try:
                school_id = self.schools.resolve_school(summary.source_school_code)
                student = self.students.resolve_student(summary.source_student_id)
            except ReconciliationGap as gap:
                outcome.gaps.append((gap, None))
                continue
            outcome.year_summaries.append(ResolvedYearSummary(
                student_id=student.canonical_student_id,
                school_id=school_id,
                record=summary,
            ))

        if outcome.gaps:
            codes = sorted({f"{g.kind}:{g.raw_code}" for g, _ in outcome.gaps})
            logger.warning(f"{len(outcome.gaps)} records unresolved ({len(codes)} distinct codes): {codes[:10]}")
        return outcome


# ----------------------------------------------------------------------
# Gap bookkeeping
# ----------------------------------------------------------------------

def record_gaps(db, gaps: list[tuple[ReconciliationGap, NormalizedEvent | None]], operation_id=None) -> int:
    """Persist gaps and park their attendance rows for later replay.

    Returns the number of distinct gap codes touched. Commits.
    """
    if not gaps:
        return 0

    now = datetime.now(timezone.utc)
    by_key: dict[tuple[str, str], ReconciliationGapRecord] = {}

    for gap, event in gaps:
        key = (gap.kind, gap.raw_code)
        record = by_key.get(key)
        if record is None:
            record = db.execute(
                select(ReconciliationGapRecord).where(
                    ReconciliationGapRecord.kind == gap.kind,
                    ReconciliationGapRecord.raw_code == gap.raw_code,
                )
            ).scalar_one_or_none()
            if record is None:
                record = ReconciliationGapRecord(
                    id=uuid.uuid4(),
                    kind=gap.kind,
                    raw_code=gap.raw_code,
                    normalized_code=normalize_code(gap.raw_code),
                    status="pending",
                    occurrences=0,
                    first_seen_at=now,
                    last_seen_at=now,
                )
                db.add(record)
            by_key[key] = record

        record.occurrences = (record.occurrences or 0) + 1
        record.last_seen_at = now
        record.status = "pending"
        record.resolved_at = None
        if operation_id:
            record.last_operation_id = operation_id

        if event is not None:
            _park_event(db, record, event)

    db.commit()
    return len(by_key)


def discard_superseded_parked(db, loaded: list[ResolvedEvent], failed_keys=()) -> int:
    """Drop parked rows for student-days that were just loaded from fresh source data.

    A parked row is an older observation of the same (student, date); replaying
    it later would overwrite the newer event. Commits.
    """
    failed = set(failed_keys)
    keys = sorted({
        (e.source_student_id, e.attendance_date)
        for e in loaded
        if (e.attendance_date, e.source_student_id) not in failed
    })
    removed = 0
    for i in range(0, len(keys), 500):
        chunk = keys[i:i + 500]
        removed += db.execute(
            delete(ParkedAttendanceEvent).where(or_(*(
                and_(
                    ParkedAttendanceEvent.source_student_id == sid,
                    ParkedAttendanceEvent.attendance_date == day,
                )
                for sid, day in chunk
            )))
        ).rowcount or 0
    db.commit()
    if removed:
        logger.info(f"Discarded {removed} parked events superseded by fresh data")
    return removed


def _park_event(db, gap: ReconciliationGapRecord, event: NormalizedEvent) -> None:
    db.flush()
    parked = db.execute(
        select(ParkedAttendanceEvent).where(
            ParkedAttendanceEvent.source_school_code == event.source_school_code,
            ParkedAttendanceEvent.source_student_id == event.source_student_id,
            ParkedAttendanceEvent.attendance_date == event.attendance_date,
        )
    ).scalar_one_or_none()
    if parked is None:
        parked = ParkedAttendanceEvent(
            id=uuid.uuid4(),
            source_school_code=event.source_school_code,
            source_student_id=event.source_student_id,
            attendance_date=event.attendance_date,
        )
        db.add(parked)
    parked.gap_id = gap.id
    parked.presence_state = event.presence_state.value
    parked.period_states = list(event.period_states)
    parked.provenance = event.provenance.value
    parked.source_shape = event.source_shape.value
    parked.all_day_code = event.all_day_code


@dataclass
class ReplayResult:
    gaps_resolved: int = 0
    events_replayed: int = 0
    events_still_parked: int = 0
    load: object | None = None  # LoadResult


def replay_parked_events(db, loader, operation_id=None) -> ReplayResult:
    """Re-resolve parked attendance after a mapping correction and load what now resolves."""
    result = ReplayResult()
    pending = db.execute(
        select(ReconciliationGapRecord).where(ReconciliationGapRecord.status == "pending")
    ).scalars().all()
    if not pending:
        return result

    reconciler = Reconciler(db)
    parked_rows: list[ParkedAttendanceEvent] = []
    for gap in pending:
        parked_rows.extend(gap.parked_events)

    events = [
        NormalizedEvent(
            source_student_id=p.source_student_id,
            source_school_code=p.source_school_code,
            attendance_date=p.attendance_date,
            presence_state=PresenceState(p.presence_state),
            period_states=tuple(p.period_states or []),
            source_shape=SourceShape(p.source_shape),
            provenance=Provenance(p.provenance),
            all_day_code=p.all_day_code,
        )
        for p in parked_rows
    ]
    outcome = reconciler.reconcile(events)

    resolved_keys = {
        (e.source_school_code, e.source_student_id, e.attendance_date) for e in outcome.resolved
    }
    if outcome.resolved:
        result.load = loader.upsert(outcome.resolved, operation_id=operation_id)
    result.events_replayed = len(outcome.resolved)

    failed_keys = set()
    if result.load is not None:
        failed_keys = set(result.load.failed_keys)

    for parked in parked_rows:
        key = (parked.source_school_code, parked.source_student_id, parked.attendance_date)
        if key in resolved_keys and (parked.attendance_date, parked.source_student_id) not in failed_keys:
            db.delete(parked)
    db.flush()

    now = datetime.now(timezone.utc)
    for gap in pending:
        db.refresh(gap)
        remaining = len(gap.parked_events)
        if remaining == 0 and _gap_code_resolves(reconciler, gap):
            gap.status = "resolved"
            gap.resolved_at = now
            result.gaps_resolved += 1
        result.events_still_parked += remaining

    db.commit()
    logger.info(
        f"Replayed {result.events_replayed} parked events, resolved {result.gaps_resolved} gaps, "
        f"{result.events_still_parked} still parked"
    )
    return result


def _gap_code_resolves(reconciler: Reconciler, gap: ReconciliationGapRecord) -> bool:
    try:
        if gap.kind == GapKind.SCHOOL.value:
            reconciler.schools.resolve_school(gap.raw_code)
        else:
            reconciler.students.resolve_student(gap.raw_code)
    except ReconciliationGap:
        return False
    return True


# ----------------------------------------------------------------------
# Administrative mapping operations
# ----------------------------------------------------------------------

def _check_alias_available(db, code: str, school_id: uuid.UUID) -> None:
    """Raise AliasConflictError if ``code`` (or its normalized form) belongs to another school."""
    normalized = normalize_code(code)

    alias_owner = db.execute(
        select(SchoolAlias).where(
            SchoolAlias.is_active == True,  # noqa: E712
            SchoolAlias.school_id != school_id,
            (SchoolAlias.code == code) | (SchoolAlias.normalized_code == normalized),
        )
    ).scalars().first()
    if alias_owner:
        raise AliasConflictError(
            f"Code {code!r} conflicts with alias {alias_owner.code!r} of another school",
            details={"code": code, "school_id": str(alias_owner.school_id)},
        )

    for other in db.execute(
        select(School).where(School.is_active == True, School.id != school_id)  # noqa: E712
    ).scalars():
        if other.code == code or normalize_code(other.code) == normalized:
            raise AliasConflictError(
                f"Code {code!r} conflicts with canonical code of school {other.code!r}",
                details={"code": code, "school_id": str(other.id)},
            )


def _next_version(db, code: str) -> int:
    current = db.execute(select(func.max(SchoolAlias.version)).where(SchoolAlias.code == code)).scalar()
    return (current or 0) + 1


def create_school(db, code: str, name: str, period_count: int = 7, aliases: list[str] | None = None) -> School:
    """Onboard a school with its canonical code and source aliases. Commits."""
    school = School(id=uuid.uuid4(), code=str(code).strip(), name=name, period_count=period_count, is_active=True)
    db.add(school)
    db.flush()
    for i, alias in enumerate(aliases or []):
        add_alias(db, school.id, alias, primary=(i == 0), reason="onboarding", commit=False)
    db.commit()
    db.refresh(school)
    logger.info(f"Created school {school.code} ({school.name}) with aliases {aliases or []}")
    return school


def add_alias(db, school_id, code: str, primary: bool = False, reason: str | None = None, commit: bool = True) -> SchoolAlias:
    code = str(code).strip()
    _check_alias_available(db, code, school_id)
    alias = SchoolAlias(
        id=uuid.uuid4(),
        school_id=school_id,
        code=code,
        normalized_code=normalize_code(code),
        version=_next_version(db, code),
        is_primary=primary,
        is_active=True,
        reason=reason,
    )
    db.add(alias)
    if commit:
        db.commit()
    else:
        db.flush()
    return alias


def correct_alias(db, school_id, old_code: str, new_code: str, reason: str | None = None) -> SchoolAlias:
    """Replace one of a school's aliases with a corrected code.

    The old alias row is soft-deactivated and a new versioned row is written.
    Aggregates that depended on the old mapping must be recomputed afterwards.
    """
    old_code = str(old_code).strip()
    new_code = str(new_code).strip()
    old = db.execute(
        select(SchoolAlias).where(
            SchoolAlias.school_id == school_id,
            SchoolAlias.code == old_code,
            SchoolAlias.is_active == True,  # noqa: E712
        )
    ).scalar_one_or_none()
    if old is None:
        raise ValueError(f"School {school_id} has no active alias {old_code!r}")

    _check_alias_available(db, new_code, school_id)

    now = datetime.now(timezone.utc)
    old.is_active = False
    old.deactivated_at = now
    db.flush()

    new = SchoolAlias(
        id=uuid.uuid4(),
        school_id=school_id,
        code=new_code,
        normalized_code=normalize_code(new_code),
        version=_next_version(db, new_code),
        is_primary=old.is_primary,
        is_active=True,
        reason=reason or f"corrected from {old_code!r}",
    )
    db.add(new)
    db.commit()
    logger.info(f"Corrected alias for school {school_id}: {old_code!r} -> {new_code!r} (v{new.version})")
    return new


def deactivate_school(db, school_id) -> School:
    school = db.get(School, school_id)
    if school is None:
        raise ValueError(f"School {school_id} not found")
    school.is_active = False
    school.deactivated_at = datetime.now(timezone.utc)
    db.commit()
    return school


# ----------------------------------------------------------------------
# Drift detection
# ----------------------------------------------------------------------

@dataclass
class DriftFinding:
    kind: str  # non_canonical_alias, normalized_collision, gap_matches_school, unresolved_gap
    code: str
    message: str
    school_ids: list[str] = field(default_factory=list)
    occurrences: int = 0


def detect_code_drift(db) -> list[DriftFinding]:
    """Automated check for code-format drift between the SIS and the registry."""
    findings: list[DriftFinding] = []

    schools = db.execute(select(School).where(School.is_active == True)).scalars().all()  # noqa: E712
    aliases = db.execute(select(SchoolAlias).where(SchoolAlias.is_active == True)).scalars().all()  # noqa: E712

    owners: dict[str, set[str]] = defaultdict(set)
    for school in schools:
        owners[normalize_code(school.code)].add(str(school.id))
    for alias in aliases:
        owners[alias.normalized_code].add(str(alias.school_id))
        if alias.code != alias.normalized_code:
            findings.append(DriftFinding(
                kind="non_canonical_alias",
                code=alias.code,
                message=f"Alias {alias.code!r} is stored padded; canonical form is {alias.normalized_code!r}",
                school_ids=[str(alias.school_id)],
            ))

    for normalized, school_ids in owners.items():
        if len(school_ids) > 1:
            findings.append(DriftFinding(
                kind="normalized_collision",
                code=normalized,
                message=f"Normalized code {normalized!r} maps to {len(school_ids)} schools",
                school_ids=sorted(school_ids),
            ))

    gaps = db.execute(
        select(ReconciliationGapRecord).where(ReconciliationGapRecord.status == "pending")
    ).scalars().all()
    for gap in gaps:
        matches = owners.get(gap.normalized_code, set()) if gap.kind == GapKind.SCHOOL.value else set()
        if len(matches) == 1:
            findings.append(DriftFinding(
                kind="gap_matches_school",
                code=gap.raw_code,
                message=f"Pending gap {gap.raw_code!r} now matches a school; replay parked events",
                school_ids=sorted(matches),
                occurrences=gap.occurrences,
            ))
        else:
            findings.append(DriftFinding(
                kind="unresolved_gap",
                code=gap.raw_code,
                message=f"Unresolved {gap.kind} code {gap.raw_code!r}",
                occurrences=gap.occurrences,
            ))

    return findings
