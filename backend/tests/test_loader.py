"""Tests for the idempotent bulk loader."""

import uuid
from datetime import date, timedelta

from sqlalchemy import select

from attendance_sync.enums import PresenceState, Provenance, SourceShape
from attendance_sync.models.attendance_event import AttendanceEvent
from attendance_sync.services.loader import BulkLoader, hash_event
from attendance_sync.services.reconciliation import ResolvedEvent


def _resolved(school, student_id, day, state=PresenceState.PRESENT, provenance=Provenance.OBSERVED, grade=6):
    return ResolvedEvent(
        student_id=student_id,
        school_id=school.id,
        grade_level=grade,
        attendance_date=day,
        presence_state=state,
        period_states=(None,) * 7,
        provenance=provenance,
        source_shape=SourceShape.DAY_LEVEL,
        source_student_id="src",
        source_school_code="001",
    )


def _rows(db):
    return db.execute(
        select(AttendanceEvent).order_by(AttendanceEvent.attendance_date).execution_options(populate_existing=True)
    ).scalars().all()


def test_insert_then_identical_reload_is_unchanged(db, make_school):
    school = make_school("1")
    students = [uuid.uuid4() for _ in range(5)]
    events = [_resolved(school, s, date(2024, 8, 15)) for s in students]
    loader = BulkLoader(db, batch_size=2)

    first = loader.upsert(events)
    snapshot = [(r.student_id, r.presence_state, r.content_hash) for r in _rows(db)]
    second = loader.upsert(events)

    assert (first.inserted, first.updated, first.unchanged) == (5, 0, 0)
    assert first.batches == 3
    assert first.touched == {(school.id, date(2024, 8, 15))}
    assert (second.inserted, second.updated, second.unchanged) == (0, 0, 5)
    assert second.touched == set()
    assert [(r.student_id, r.presence_state, r.content_hash) for r in _rows(db)] == snapshot


def test_changed_state_updates_row(db, make_school):
    school = make_school("1")
    student = uuid.uuid4()
    loader = BulkLoader(db)
    loader.upsert([_resolved(school, student, date(2024, 8, 15))])

    result = loader.upsert([_resolved(school, student, date(2024, 8, 15), state=PresenceState.ABSENT_EXCUSED)])

    assert result.updated == 1
    [row] = _rows(db)
    assert row.presence_state == "ABSENT_EXCUSED"


def test_duplicates_within_input_collapse_to_one_row(db, make_school):
    school = make_school("1")
    student = uuid.uuid4()
    day = date(2024, 8, 15)

    result = BulkLoader(db).upsert([
        _resolved(school, student, day),
        _resolved(school, student, day, state=PresenceState.TARDY),
    ])

    assert result.inserted == 1
    [row] = _rows(db)
    assert row.presence_state == "TARDY"


def test_synthesized_never_replaces_observed(db, make_school):
    school = make_school("1")
    student = uuid.uuid4()
    day = date(2024, 8, 15)
    loader = BulkLoader(db)
    loader.upsert([_resolved(school, student, day, state=PresenceState.PRESENT)])

    result = loader.upsert([
        _resolved(school, student, day, state=PresenceState.ABSENT_UNEXCUSED, provenance=Provenance.SYNTHESIZED),
    ])

    assert result.updated == 0
    assert result.unchanged == 1
    [row] = _rows(db)
    assert row.provenance == "OBSERVED"
    assert row.presence_state == "PRESENT"


def test_observed_replaces_synthesized(db, make_school):
    school = make_school("1")
    student = uuid.uuid4()
    day = date(2024, 8, 15)
    loader = BulkLoader(db)
    loader.upsert([_resolved(school, student, day, state=PresenceState.ABSENT_UNEXCUSED, provenance=Provenance.SYNTHESIZED)])

    result = loader.upsert([_resolved(school, student, day, state=PresenceState.PRESENT)])

    assert result.updated == 1
    [row] = _rows(db)
    assert row.provenance == "OBSERVED"


def test_bad_record_fails_alone(db, make_school):
    school = make_school("1")
    good = [_resolved(school, uuid.uuid4(), date(2024, 8, 15) + timedelta(days=i)) for i in range(3)]
    # Violates NOT NULL on grade_level
    bad = _resolved(school, uuid.uuid4(), date(2024, 8, 15), grade=None)

    result = BulkLoader(db, batch_size=10).upsert(good + [bad])

    assert result.inserted == 3
    assert result.failed == 1
    assert result.errors[0].category == "load"
    assert (date(2024, 8, 15), "src") in result.failed_keys
    assert len(_rows(db)) == 3


def test_content_hash_ignores_operation_but_tracks_state(make_school, db):
    school = make_school("1")
    student = uuid.uuid4()
    a = _resolved(school, student, date(2024, 8, 15))
    b = _resolved(school, student, date(2024, 8, 15), state=PresenceState.TARDY)

    assert hash_event(a) == hash_event(a)
    assert hash_event(a) != hash_event(b)
