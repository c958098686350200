"""Attendance history detail normalizer.

``/schools/{code}/AttendanceHistory/details/year/{yyyy-yyyy}`` groups entries
per student::

    {"StudentID": 1001, "HistoryDetails": [
        {"SchoolYear": "2024-2025", "Date": "2024-08-15T00:00:00",
         "Code": "A", "Period1": "A", "Period2": "A", ...}]}

Entries for other school years are ignored.
"""

import re

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

_PERIOD_KEY = re.compile(r"^Period(\d+)$")


@register_normalizer(SourceShape.DETAIL_HISTORY)
def normalize_detail_history(record: dict, ctx: NormalizeContext, result: NormalizationResult) -> None:
    student_id = student_id_of(record)
    if student_id is None:
        result.reject("History record has no StudentID", record_keys=sorted(record))
        return

    school_code = str(record.get("SchoolCode") or ctx.school_code).strip()
    for detail in nested_entries(record, "HistoryDetails", result, student_id):
        if ctx.school_year and detail.get("SchoolYear") and detail["SchoolYear"] != ctx.school_year:
            continue

        attendance_date = parse_source_date(detail.get("Date"))
        if attendance_date is None:
            result.reject(
                "History detail has no parsable date",
                student_id=student_id,
                raw_date=detail.get("Date"),
            )
            continue
        if not ctx.in_range(attendance_date):
            result.out_of_range += 1
            continue

        periods: list[str | None] = [None] * ctx.period_count
        bad_period = None
        for key, value in detail.items():
            match = _PERIOD_KEY.match(key)
            if not match or value is None:
                continue
            period = int(match.group(1))
            if not 1 <= period <= ctx.period_count:
                # Empty trailing columns are common; only populated ones are errors
                if str(value).strip():
                    bad_period = period
                    break
                continue
            periods[period - 1] = map_code(value, result).value

        if bad_period is not None:
            result.reject(
                "Period index out of range",
                student_id=student_id,
                date=attendance_date.isoformat(),
                period=bad_period,
                period_count=ctx.period_count,
            )
            continue

        period_states = tuple(periods)
        code = detail.get("Code")
        if code is not None and str(code).strip():
            state = map_code(code, result)
            all_day_code = str(code).strip().upper()
        else:
            state = derive_day_state(period_states)
            all_day_code = None

        result.events.append(NormalizedEvent(
            source_student_id=student_id,
            source_school_code=school_code,
            attendance_date=attendance_date,
            presence_state=state,
            period_states=period_states,
            source_shape=SourceShape.DETAIL_HISTORY,
            all_day_code=all_day_code,
        ))
