"""Day-level attendance normalizer.

The ``/schools/{code}/attendance`` endpoint returns either one object per
student-day::

    {"StudentID": 1001, "CalendarDate": "20240815",
     "AllDayAttendanceCode": "", "Classes": [{"Period": 1, "AttendanceCode": "T"}]}

or one object per student with the days nested under ``AttendanceDays``.
"""

from attendance_sync.enums import SourceShape
from attendance_sync.normalizers.base import (
    NormalizationResult,
    NormalizeContext,
    NormalizedEvent,
    derive_day_state,
    map_code,
    nested_entries,
    parse_source_date,
    student_id_of,
)
from attendance_sync.normalizers.registry import register_normalizer


@register_normalizer(SourceShape.DAY_LEVEL)
def normalize_day_level(record: dict, ctx: NormalizeContext, result: NormalizationResult) -> None:
    student_id = student_id_of(record)
    if student_id is None:
        result.reject("Attendance record has no StudentID", record_keys=sorted(record))
        return

    if "AttendanceDays" in record:
        days = nested_entries(record, "AttendanceDays", result, student_id)
    else:
        days = [record]

    school_code = str(record.get("SchoolCode") or ctx.school_code).strip()
    for day in days:
        _normalize_day(day, student_id, school_code, ctx, result)


def _normalize_day(
    day: dict,
    student_id: str,
    school_code: str,
    ctx: NormalizeContext,
    result: NormalizationResult,
) -> None:
    attendance_date = parse_source_date(day.get("CalendarDate"))
    if attendance_date is None:
        result.reject(
            "Attendance day has no parsable date",
            student_id=student_id,
            raw_date=day.get("CalendarDate"),
        )
        return
    if not ctx.in_range(attendance_date):
        result.out_of_range += 1
        return

    classes = day.get("Classes") or []
    if not isinstance(classes, list) or not all(isinstance(entry, dict) for entry in classes):
        result.reject(
            "Classes is not a list of JSON objects",
            student_id=student_id,
            date=attendance_date.isoformat(),
        )
        return

    periods: list[str | None] = [None] * ctx.period_count
    for entry in classes:
        try:
            period = int(entry.get("Period"))
        except (TypeError, ValueError):
            period = None
        if period is None or not 1 <= period <= ctx.period_count:
            result.reject(
                "Period index out of range",
                student_id=student_id,
                date=attendance_date.isoformat(),
                period=entry.get("Period"),
                period_count=ctx.period_count,
            )
            return
        periods[period - 1] = map_code(entry.get("AttendanceCode"), result).value

    period_states = tuple(periods)
    all_day_code = day.get("AllDayAttendanceCode")
    if all_day_code is not None and str(all_day_code).strip():
        state = map_code(all_day_code, result)
        all_day_code = str(all_day_code).strip().upper()
    else:
        state = derive_day_state(period_states)
        all_day_code = None

    result.events.append(NormalizedEvent(
        source_student_id=student_id,
        source_school_code=school_code,
        attendance_date=attendance_date,
        presence_state=state,
        period_states=period_states,
        source_shape=SourceShape.DAY_LEVEL,
        all_day_code=all_day_code,
    ))
