"""End-to-end orchestration tests against the fake SIS."""

from datetime import date, datetime, timezone

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from attendance_sync.config import get_settings
from attendance_sync.enums import OperationStatus, PresenceState, SchoolSyncStatus, SourceShape
from attendance_sync.errors import OperationClaimedError, OverlappingOperationError
from attendance_sync.models.attendance_event import AttendanceEvent
from attendance_sync.models.daily_grade_summary import DailyGradeSummary
from attendance_sync.models.reconciliation_gap import ParkedAttendanceEvent, ReconciliationGapRecord
from attendance_sync.services.aggregator import TimelineAggregator
from attendance_sync.services.loader import BulkLoader
from attendance_sync.services.orchestrator import SyncOrchestrator, find_running_overlaps, is_stale
from attendance_sync.services.reconciliation import correct_alias, replay_parked_events
from attendance_sync.services.school_calendar import SchoolCalendar

from conftest import day_record

DAY = date(2024, 8, 15)


@pytest.fixture
def calendar():
    return SchoolCalendar(holidays=[], school_year_start_month=8)


@pytest.fixture
def orchestrator(db, sis_client, calendar):
    return SyncOrchestrator(db, sis_client, calendar=calendar)


def serve_school(fake_sis, code, student_ids, records=None, grade="6"):
    """Register roster and day-level attendance routes for one school."""
    fake_sis.on(f"/schools/{code}/students", [{"StudentID": sid, "Grade": grade} for sid in student_ids])
    if records is not None:
        fake_sis.on(f"/schools/{code}/attendance", records)


def _events(db, school):
    return db.execute(
        select(func.count()).select_from(AttendanceEvent).where(AttendanceEvent.school_id == school.id)
    ).scalar()


def _summaries(db, school):
    return db.execute(
        select(DailyGradeSummary).where(DailyGradeSummary.school_id == school.id)
    ).scalars().all()


def test_ten_students_eight_present(db, make_school, fake_sis, orchestrator):
    school = make_school("1", aliases=["001"])
    ids = list(range(1001, 1011))
    records = [day_record(sid, DAY, "A" if sid > 1008 else "") for sid in ids]
    serve_school(fake_sis, "001", ids, records)

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    assert operation.status == OperationStatus.SUCCEEDED.value
    [summary] = _summaries(db, school)
    assert (summary.total_students, summary.students_present, summary.students_absent) == (10, 8, 2)
    assert summary.attendance_rate == 80.0
    assert operation.counters["students_synced"] == 10
    assert operation.counters["events_inserted"] == 10
    assert operation.summaries_written == 1


def test_transient_school_failure_ends_partial(db, make_school, fake_sis, orchestrator, sleeps):
    first, second, third = make_school("1"), make_school("2"), make_school("3")
    serve_school(fake_sis, "1", [1], [day_record(1, DAY)])
    serve_school(fake_sis, "2", [2])
    fake_sis.on("/schools/2/attendance", lambda request: httpx.Response(503))
    serve_school(fake_sis, "3", [3], [day_record(3, DAY, "A")])

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    assert operation.status == OperationStatus.PARTIAL.value
    statuses = {entry.school_id: entry.status for entry in operation.schools}
    assert statuses == {
        first.id: SchoolSyncStatus.SUCCEEDED.value,
        second.id: SchoolSyncStatus.FAILED.value,
        third.id: SchoolSyncStatus.SUCCEEDED.value,
    }
    assert _events(db, first) == 1
    assert _events(db, second) == 0
    assert _events(db, third) == 1
    assert [e["school_id"] for e in operation.errors] == [str(second.id)]
    assert operation.errors[0]["category"] == "transient_network"
    assert operation.counters["schools_failed"] == 1
    # Retries for school 2 backed off between its three attempts
    assert len(sleeps) == 2
    assert len(_summaries(db, first)) == 1
    assert len(_summaries(db, third)) == 1


def test_fatal_auth_stops_run_and_resume_finishes(db, make_school, fake_sis, orchestrator):
    first, second = make_school("1"), make_school("2")
    fake_sis.on("/schools/1/students", lambda request: httpx.Response(401))
    serve_school(fake_sis, "2", [2], [day_record(2, DAY)])

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    assert operation.status == OperationStatus.FAILED.value
    assert [entry.status for entry in operation.schools] == [
        SchoolSyncStatus.FAILED.value,
        SchoolSyncStatus.PENDING.value,
    ]
    # Nothing after the auth failure was requested
    assert "/schools/2/students" not in fake_sis.paths()

    serve_school(fake_sis, "1", [1], [day_record(1, DAY, "A")])
    orchestrator.resume(operation.id)

    assert operation.status == OperationStatus.SUCCEEDED.value
    assert _events(db, first) == 1
    assert _events(db, second) == 1


def test_resume_skips_schools_that_already_succeeded(db, make_school, fake_sis, orchestrator):
    make_school("1")
    make_school("2")
    serve_school(fake_sis, "1", [1], [day_record(1, DAY)])
    fake_sis.on("/schools/2/students", lambda request: httpx.Response(503))

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)
    assert operation.status == OperationStatus.PARTIAL.value

    serve_school(fake_sis, "2", [2], [day_record(2, DAY)])
    fake_sis.calls.clear()
    orchestrator.resume(operation.id)

    assert operation.status == OperationStatus.SUCCEEDED.value
    assert all(not path.startswith("/schools/1/") for path in fake_sis.paths())


def test_cancel_is_checked_between_schools(db, make_school, fake_sis, orchestrator):
    first, second = make_school("1"), make_school("2")
    operation = orchestrator.create_operation(DAY, DAY)

    def attendance_then_cancel(request):
        orchestrator.request_cancel(operation.id)
        return httpx.Response(200, json=[day_record(1, DAY)])

    serve_school(fake_sis, "1", [1])
    fake_sis.on("/schools/1/attendance", attendance_then_cancel)
    serve_school(fake_sis, "2", [2], [day_record(2, DAY)])

    orchestrator.run(operation.id)

    assert [entry.status for entry in operation.schools] == [
        SchoolSyncStatus.SUCCEEDED.value,
        SchoolSyncStatus.SKIPPED.value,
    ]
    assert operation.status == OperationStatus.PARTIAL.value
    # The first school's batch stays committed and aggregated
    assert _events(db, first) == 1
    assert _events(db, second) == 0
    assert len(_summaries(db, first)) == 1


def test_falls_back_to_detail_history_when_day_level_missing(db, make_school, fake_sis, orchestrator):
    school = make_school("1")
    serve_school(fake_sis, "1", [7])
    fake_sis.on("/schools/1/AttendanceHistory/details/year/2024-2025", [{
        "StudentID": 7,
        "HistoryDetails": [
            {"SchoolYear": "2024-2025", "Date": "2024-08-15T00:00:00", "Code": "A"},
            {"SchoolYear": "2024-2025", "Date": "2024-08-16T00:00:00", "Code": ""},
        ],
    }])

    operation = orchestrator.create_operation(DAY, date(2024, 8, 16))
    orchestrator.run(operation.id)

    [entry] = operation.schools
    assert entry.source_shape == SourceShape.DETAIL_HISTORY.value
    assert "/schools/1/attendance" in fake_sis.paths()
    assert _events(db, school) == 2
    assert [s.cumulative_absences for s in sorted(_summaries(db, school), key=lambda s: s.summary_date)] == [1, 1]


def test_no_supported_shape_fails_the_school(db, make_school, fake_sis, orchestrator):
    make_school("1")
    serve_school(fake_sis, "1", [1])

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    assert operation.status == OperationStatus.FAILED.value
    assert operation.errors[0]["category"] == "unsupported_endpoint"
    assert operation.errors[0]["details"]["shapes_tried"] == ["day_level", "detail_history", "summary"]


def test_null_date_is_rejected_and_never_aggregated(db, make_school, fake_sis, orchestrator):
    school = make_school("1")
    bad = {"StudentID": 2, "CalendarDate": None, "AllDayAttendanceCode": "A", "Classes": []}
    serve_school(fake_sis, "1", [1, 2], [day_record(1, DAY), bad])

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    [entry] = operation.schools
    assert entry.records_rejected == 1
    assert _events(db, school) == 1
    [summary] = _summaries(db, school)
    assert (summary.total_students, summary.students_absent) == (1, 0)
    [rejected] = [e for e in operation.errors if e["category"] == "validation"]
    assert rejected["details"]["raw_date"] is None


def test_alias_correction_replays_orphaned_events(db, make_school, fake_sis, orchestrator):
    school_c = make_school("30", aliases=["030"])
    serve_school(fake_sis, "030", [1, 2])
    fake_sis.on("/schools/030/attendance", [
        {**day_record(1, DAY, "A"), "SchoolCode": "003"},
        {**day_record(2, DAY), "SchoolCode": "003"},
    ])

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    assert operation.schools[0].reconciliation_gaps == 2
    assert _summaries(db, school_c) == []
    gap = db.execute(select(ReconciliationGapRecord)).scalar_one()
    assert (gap.kind, gap.raw_code) == ("school", "003")

    correct_alias(db, school_c.id, "030", "003", reason="SIS reports 003")
    result = replay_parked_events(db, BulkLoader(db))
    TimelineAggregator(db, calendar=orchestrator.calendar).recompute_incremental(result.load.touched)

    assert result.events_replayed == 2
    assert result.gaps_resolved == 1
    [summary] = _summaries(db, school_c)
    assert (summary.total_students, summary.students_absent) == (2, 1)


def test_overlapping_operation_cannot_start(db, make_school, orchestrator):
    make_school("1")
    running = orchestrator.create_operation(DAY, date(2024, 8, 30))
    orchestrator.claim(running)
    overlapping = orchestrator.create_operation(date(2024, 8, 20), date(2024, 9, 5))

    with pytest.raises(OverlappingOperationError):
        orchestrator.claim(overlapping)

    disjoint = orchestrator.create_operation(date(2024, 9, 1), date(2024, 9, 5))
    orchestrator.claim(disjoint)
    assert disjoint.status == OperationStatus.RUNNING.value


def test_create_operation_validates_inputs(db, make_school, orchestrator):
    school = make_school("1")
    with pytest.raises(ValueError):
        orchestrator.create_operation(date(2024, 9, 1), DAY)

    school.is_active = False
    db.commit()
    with pytest.raises(ValueError):
        orchestrator.create_operation(DAY, DAY, school_ids=[school.id])


def test_full_aggregation_mode(db, make_school, fake_sis, orchestrator, monkeypatch):
    monkeypatch.setattr(get_settings(), "aggregation_mode", "full")
    school = make_school("1")
    serve_school(fake_sis, "1", [1, 2], [day_record(1, DAY, "A"), day_record(2, DAY)])

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    assert operation.status == OperationStatus.SUCCEEDED.value
    [summary] = _summaries(db, school)
    assert summary.students_absent == 1


def test_malformed_nested_record_is_rejected_without_failing_the_school(db, make_school, fake_sis, orchestrator):
    school = make_school("1")
    serve_school(fake_sis, "1", [1, 2], [
        day_record(1, DAY),
        {"StudentID": 2, "CalendarDate": "20240815", "Classes": [None]},
    ])

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    [entry] = operation.schools
    assert operation.status == OperationStatus.SUCCEEDED.value
    assert entry.status == SchoolSyncStatus.SUCCEEDED.value
    assert entry.records_rejected == 1
    assert _events(db, school) == 1


def test_fresh_sync_supersedes_parked_events(db, make_school, fake_sis, orchestrator):
    school_c = make_school("30", aliases=["030"])
    serve_school(fake_sis, "030", [1])
    fake_sis.on("/schools/030/attendance", [{**day_record(1, DAY, "A"), "SchoolCode": "003"}])
    first = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(first.id)
    assert db.execute(select(func.count()).select_from(ParkedAttendanceEvent)).scalar() == 1

    correct_alias(db, school_c.id, "030", "003")
    serve_school(fake_sis, "003", [1], [{**day_record(1, DAY), "SchoolCode": "003"}])
    second = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(second.id)

    assert db.execute(select(func.count()).select_from(ParkedAttendanceEvent)).scalar() == 0

    # The old absence must not come back over the newer observation
    result = replay_parked_events(db, BulkLoader(db))
    assert result.events_replayed == 0
    event = db.execute(
        select(AttendanceEvent).execution_options(populate_existing=True)
    ).scalar_one()
    assert event.presence_state == PresenceState.PRESENT.value
    [summary] = _summaries(db, school_c)
    assert summary.students_absent == 0


def test_loaded_dates_are_aggregated_when_a_later_step_fails(db, make_school, fake_sis, orchestrator, monkeypatch):
    school = make_school("1")
    serve_school(fake_sis, "1", [1, 2], [day_record(1, DAY, "A"), day_record(2, DAY)])

    def broken_year_summaries(self, summaries):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(BulkLoader, "upsert_year_summaries", broken_year_summaries)

    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.run(operation.id)

    [entry] = operation.schools
    assert entry.status == SchoolSyncStatus.FAILED.value
    assert entry.events_inserted == 2
    assert _events(db, school) == 2
    [summary] = _summaries(db, school)
    assert (summary.total_students, summary.students_absent) == (2, 1)


def _orphan(db, operation):
    """Make a RUNNING operation look like its worker died long ago."""
    operation.started_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
    operation.last_checkpoint_at = datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc)
    db.commit()


def test_running_operation_cannot_be_claimed_twice(db, make_school, orchestrator):
    make_school("1")
    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.claim(operation)

    with pytest.raises(OperationClaimedError):
        orchestrator.claim(operation)
    # A duplicate task delivery goes through run()
    with pytest.raises(OperationClaimedError):
        orchestrator.run(operation.id)

    db.refresh(operation)
    assert operation.status == OperationStatus.RUNNING.value


def test_stale_running_operation_does_not_block_claims(db, make_school, orchestrator):
    make_school("1")
    orphaned = orchestrator.create_operation(DAY, date(2024, 8, 30))
    orchestrator.claim(orphaned)
    _orphan(db, orphaned)
    assert is_stale(orphaned)

    overlapping = orchestrator.create_operation(date(2024, 8, 20), date(2024, 9, 5))
    orchestrator.claim(overlapping)

    assert overlapping.status == OperationStatus.RUNNING.value


def test_running_overlaps_with_open_scope(db, make_school, orchestrator):
    first, second = make_school("1"), make_school("2")
    operation = orchestrator.create_operation(DAY, DAY, school_ids=[first.id])
    orchestrator.claim(operation)

    assert [op.id for op in find_running_overlaps(db)] == [operation.id]
    assert find_running_overlaps(db, DAY, DAY, [first.id])
    assert find_running_overlaps(db, school_ids=[second.id]) == []
    assert find_running_overlaps(db, date(2024, 9, 1)) == []


def test_resume_refuses_live_running_operation(db, make_school, fake_sis, orchestrator):
    make_school("1")
    serve_school(fake_sis, "1", ["A"], [day_record("A", DAY)])
    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.claim(operation)

    with pytest.raises(OperationClaimedError):
        orchestrator.resume(operation.id)
    assert fake_sis.calls == []

    operation = orchestrator.resume(operation.id, force=True)
    assert operation.status == OperationStatus.SUCCEEDED.value


def test_resume_takes_over_an_orphaned_operation(db, make_school, fake_sis, orchestrator):
    school = make_school("1")
    serve_school(fake_sis, "1", ["A", "B"], [day_record("A", DAY), day_record("B", DAY)])
    operation = orchestrator.create_operation(DAY, DAY)
    orchestrator.claim(operation)
    _orphan(db, operation)

    operation = orchestrator.resume(operation.id)

    assert operation.status == OperationStatus.SUCCEEDED.value
    assert _events(db, school) == 2
