"""Tests for shape normalizers and the attendance code table."""

from datetime import date

import pytest

from attendance_sync.enums import PresenceState, Provenance, SourceShape
from attendance_sync.normalizers import normalize, synthesize_daily_events
from attendance_sync.normalizers.base import (
    YearSummaryRecord,
    derive_day_state,
    map_code,
    parse_source_date,
)
from attendance_sync.normalizers.registry import list_shapes

from conftest import day_record


@pytest.mark.parametrize("code,state", [
    ("P", PresenceState.PRESENT),
    ("", PresenceState.PRESENT),
    (None, PresenceState.PRESENT),
    ("A", PresenceState.ABSENT_UNEXCUSED),
    ("u", PresenceState.ABSENT_UNEXCUSED),
    ("E", PresenceState.ABSENT_EXCUSED),
    ("S", PresenceState.ABSENT_EXCUSED),
    ("T", PresenceState.TARDY),
    ("Z", PresenceState.ABSENT_UNEXCUSED),
])
def test_code_table(code, state):
    assert map_code(code) == state


@pytest.mark.parametrize("value,expected", [
    ("20240815", date(2024, 8, 15)),
    (20240815, date(2024, 8, 15)),
    ("2024-08-15", date(2024, 8, 15)),
    ("2024-08-15T00:00:00", date(2024, 8, 15)),
    ("", None),
    (None, None),
    ("not a date", None),
])
def test_parse_source_date(value, expected):
    assert parse_source_date(value) == expected


def test_derive_day_state_from_periods():
    assert derive_day_state((None, None)) == PresenceState.PRESENT
    assert derive_day_state(("ABSENT_UNEXCUSED", "ABSENT_UNEXCUSED")) == PresenceState.ABSENT_UNEXCUSED
    assert derive_day_state(("ABSENT_EXCUSED", None, "ABSENT_EXCUSED")) == PresenceState.ABSENT_EXCUSED
    assert derive_day_state(("ABSENT_EXCUSED", "ABSENT_UNEXCUSED")) == PresenceState.ABSENT_UNEXCUSED
    assert derive_day_state(("PRESENT", "ABSENT_UNEXCUSED")) == PresenceState.PARTIAL
    assert derive_day_state(("TARDY", "PRESENT")) == PresenceState.TARDY


def test_every_shape_has_a_normalizer():
    assert set(list_shapes()) == set(SourceShape)


def test_day_level_all_day_code_wins():
    records = [day_record(1001, date(2024, 8, 15), all_day="A", classes=[{"Period": 1, "AttendanceCode": "P"}])]

    result = normalize(records, SourceShape.DAY_LEVEL, "001", period_count=3)

    event = result.events[0]
    assert event.presence_state == PresenceState.ABSENT_UNEXCUSED
    assert event.period_states == ("PRESENT", None, None)
    assert event.source_student_id == "1001"
    assert event.source_school_code == "001"
    assert event.all_day_code == "A"
    assert event.provenance == Provenance.OBSERVED


def test_day_level_derives_partial_from_periods():
    records = [day_record(1001, date(2024, 8, 15), classes=[
        {"Period": 1, "AttendanceCode": "A"},
        {"Period": 2, "AttendanceCode": ""},
    ])]

    result = normalize(records, SourceShape.DAY_LEVEL, "001", period_count=2)

    assert result.events[0].presence_state == PresenceState.PARTIAL


def test_day_level_grouped_records():
    records = [{
        "StudentID": 7,
        "SchoolCode": "002",
        "AttendanceDays": [
            {"CalendarDate": "2024-08-15T00:00:00", "AllDayAttendanceCode": "E"},
            {"CalendarDate": "2024-08-16T00:00:00", "AllDayAttendanceCode": ""},
        ],
    }]

    result = normalize(records, SourceShape.DAY_LEVEL, "001", period_count=7)

    assert [e.presence_state for e in result.events] == [PresenceState.ABSENT_EXCUSED, PresenceState.PRESENT]
    assert {e.source_school_code for e in result.events} == {"002"}
    assert all(len(e.period_states) == 7 for e in result.events)


def test_null_date_is_rejected_and_counted():
    records = [
        {"StudentID": 1, "CalendarDate": None, "AllDayAttendanceCode": "A"},
        day_record(2, date(2024, 8, 15)),
    ]

    result = normalize(records, SourceShape.DAY_LEVEL, "001", period_count=7)

    assert len(result.events) == 1
    assert result.rejected == 1
    assert result.errors[0].category == "validation"
    assert result.errors[0].details["student_id"] == "1"


def test_period_out_of_range_rejects_the_day():
    records = [day_record(1, date(2024, 8, 15), classes=[{"Period": 9, "AttendanceCode": "A"}])]

    result = normalize(records, SourceShape.DAY_LEVEL, "001", period_count=7)

    assert result.events == []
    assert result.rejected == 1
    assert result.errors[0].details["period"] == 9


def test_records_outside_window_are_dropped_not_rejected():
    records = [day_record(1, date(2024, 8, 14)), day_record(1, date(2024, 8, 15))]

    result = normalize(
        records, SourceShape.DAY_LEVEL, "001", period_count=7,
        start_date=date(2024, 8, 15), end_date=date(2024, 8, 15),
    )

    assert len(result.events) == 1
    assert result.out_of_range == 1
    assert result.rejected == 0


def test_missing_student_id_and_non_objects_are_rejected():
    result = normalize([{"CalendarDate": "20240815"}, "garbage"], SourceShape.DAY_LEVEL, "001", period_count=7)

    assert result.events == []
    assert result.rejected == 2


def test_unknown_codes_are_counted():
    records = [day_record(1, date(2024, 8, 15), all_day="Q")]

    result = normalize(records, SourceShape.DAY_LEVEL, "001", period_count=7)

    assert result.events[0].presence_state == PresenceState.ABSENT_UNEXCUSED
    assert result.unknown_codes == 1


def test_detail_history_filters_school_year():
    records = [{
        "StudentID": 55,
        "HistoryDetails": [
            {"SchoolYear": "2024-2025", "Date": "2024-09-03T00:00:00", "Code": "", "Period1": "A", "Period2": "A"},
            {"SchoolYear": "2023-2024", "Date": "2024-05-03T00:00:00", "Code": "A"},
            {"SchoolYear": "2024-2025", "Date": "2024-09-04T00:00:00", "Code": "T", "Period8": ""},
        ],
    }]

    result = normalize(records, SourceShape.DETAIL_HISTORY, "003", period_count=2, school_year="2024-2025")

    assert [e.attendance_date for e in result.events] == [date(2024, 9, 3), date(2024, 9, 4)]
    assert result.events[0].presence_state == PresenceState.ABSENT_UNEXCUSED
    assert result.events[0].period_states == ("ABSENT_UNEXCUSED", "ABSENT_UNEXCUSED")
    assert result.events[1].presence_state == PresenceState.TARDY
    assert all(e.source_shape == SourceShape.DETAIL_HISTORY for e in result.events)


def test_detail_history_populated_extra_period_is_rejected():
    records = [{"StudentID": 55, "HistoryDetails": [
        {"SchoolYear": "2024-2025", "Date": "2024-09-03", "Code": "", "Period3": "A"},
    ]}]

    result = normalize(records, SourceShape.DETAIL_HISTORY, "003", period_count=2, school_year="2024-2025")

    assert result.events == []
    assert result.rejected == 1


def test_summary_shape_produces_year_summaries_only():
    records = [
        {"StudentID": 9, "HistorySummaries": [{"SchoolYear": "2024-2025", "DaysEnrolled": 20, "DaysPresent": 18}]},
        {"StudentID": 10, "HistorySummaries": [{"SchoolYear": "2024-2025", "DaysEnrolled": 5, "DaysPresent": 6}]},
    ]

    result = normalize(records, SourceShape.SUMMARY, "001", period_count=7, school_year="2024-2025")

    assert result.events == []
    assert len(result.year_summaries) == 1
    assert result.year_summaries[0].days_absent == 2
    assert result.rejected == 1


def test_synthesized_events_are_deterministic_and_tagged():
    summary = YearSummaryRecord("9", "001", "2024-2025", days_enrolled=10, days_present=7)
    school_days = [date(2024, 8, d) for d in (12, 13, 14, 15, 16, 19, 20, 21, 22, 23, 26)]

    first = synthesize_daily_events(summary, school_days, period_count=7)
    second = synthesize_daily_events(summary, school_days, period_count=7)

    assert first == second
    assert len(first) == 10
    assert sum(1 for e in first if e.presence_state.is_absent) == 3
    assert all(e.provenance == Provenance.SYNTHESIZED for e in first)
    assert date(2024, 8, 26) not in {e.attendance_date for e in first}


@pytest.mark.parametrize("shape,bad", [
    (SourceShape.DAY_LEVEL, {"StudentID": 2, "CalendarDate": "20240815", "Classes": [None]}),
    (SourceShape.DAY_LEVEL, {"StudentID": 2, "CalendarDate": "20240815", "Classes": "1:A"}),
    (SourceShape.DAY_LEVEL, {"StudentID": 2, "AttendanceDays": [None]}),
    (SourceShape.DAY_LEVEL, {"StudentID": 2, "AttendanceDays": "20240815"}),
    (SourceShape.DETAIL_HISTORY, {"StudentID": 2, "HistoryDetails": "x"}),
    (SourceShape.DETAIL_HISTORY, {"StudentID": 2, "HistoryDetails": [None]}),
    (SourceShape.SUMMARY, {"StudentID": 2, "HistorySummaries": [None]}),
])
def test_malformed_nested_entries_are_rejected_not_raised(shape, bad):
    good = {
        SourceShape.DAY_LEVEL: day_record(1, date(2024, 8, 15)),
        SourceShape.DETAIL_HISTORY: {"StudentID": 1, "HistoryDetails": [
            {"SchoolYear": "2024-2025", "Date": "2024-08-15T00:00:00", "Code": "A"},
        ]},
        SourceShape.SUMMARY: {"StudentID": 1, "HistorySummaries": [
            {"SchoolYear": "2024-2025", "DaysEnrolled": 10, "DaysPresent": 9},
        ]},
    }[shape]

    result = normalize([good, bad], shape, "001", period_count=7, school_year="2024-2025")

    assert len(result.events) + len(result.year_summaries) == 1
    assert result.rejected == 1
    assert result.errors[0].category == "validation"
    assert result.errors[0].details["student_id"] == "2"
