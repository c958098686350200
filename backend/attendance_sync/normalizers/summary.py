"""Summary-only attendance normalizer.

``/schools/{code}/AttendanceHistory/summary`` has no daily resolution, so it
produces YearSummaryRecord values and never daily events. Daily events can be
synthesized from a summary only on explicit request, and are then tagged
``SYNTHESIZED`` so aggregation can tell them apart from observed data.
"""

from datetime import date

from attendance_sync.enums import PresenceState, Provenance, SourceShape
from attendance_sync.normalizers.base import (
    NormalizationResult,
    NormalizeContext,
    NormalizedEvent,
    YearSummaryRecord,
    nested_entries,
    student_id_of,
)
from attendance_sync.normalizers.registry import register_normalizer


def _as_int(value) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@register_normalizer(SourceShape.SUMMARY)
def normalize_summary(record: dict, ctx: NormalizeContext, result: NormalizationResult) -> None:
    student_id = student_id_of(record)
    if student_id is None:
        result.reject("Summary record has no StudentID", record_keys=sorted(record))
        return

    school_code = str(record.get("SchoolCode") or ctx.school_code).strip()
    for summary in nested_entries(record, "HistorySummaries", result, student_id):
        school_year = summary.get("SchoolYear")
        if ctx.school_year and school_year != ctx.school_year:
            continue

        enrolled = _as_int(summary.get("DaysEnrolled"))
        present = _as_int(summary.get("DaysPresent"))
        if enrolled is None or present is None or enrolled < 0 or present < 0 or present > enrolled:
            result.reject(
                "Summary has invalid day counts",
                student_id=student_id,
                school_year=school_year,
                days_enrolled=summary.get("DaysEnrolled"),
                days_present=summary.get("DaysPresent"),
            )
            continue

        result.year_summaries.append(YearSummaryRecord(
            source_student_id=student_id,
            source_school_code=school_code,
            school_year=school_year,
            days_enrolled=enrolled,
            days_present=present,
        ))


def synthesize_daily_events(
    summary: YearSummaryRecord,
    school_days: list[date],
    period_count: int,
) -> list[NormalizedEvent]:
    """Expand a year summary into deterministic SYNTHESIZED daily events.

    The first ``days_enrolled`` school days are used and absences are spread
    evenly across them. The output is an estimate, never observed data.
    """
    days = sorted(school_days)[:summary.days_enrolled]
    if not days:
        return []

    absences = min(summary.days_absent, len(days))
    empty_periods = (None,) * period_count
    events = []
    for i, day in enumerate(days):
        # Bresenham-style spread: day i is absent when the running quota steps up
        is_absent = (i + 1) * absences // len(days) > i * absences // len(days)
        events.append(NormalizedEvent(
            source_student_id=summary.source_student_id,
            source_school_code=summary.source_school_code,
            attendance_date=day,
            presence_state=PresenceState.ABSENT_UNEXCUSED if is_absent else PresenceState.PRESENT,
            period_states=empty_periods,
            source_shape=SourceShape.SUMMARY,
            provenance=Provenance.SYNTHESIZED,
        ))
    return events
