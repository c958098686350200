"""Normalizer package: import all shape normalizers to trigger @register_normalizer.

``normalize`` is the single shape-dispatch entry point. It performs no
database I/O; every malformed record becomes a counted ValidationError.
"""

import logging
from datetime import date

from attendance_sync.enums import SourceShape
from attendance_sync.normalizers.base import (  # noqa: F401
    NormalizationResult,
    NormalizeContext,
    NormalizedEvent,
    YearSummaryRecord,
)
from attendance_sync.normalizers.registry import get_normalizer
from attendance_sync.normalizers import day_level, detail_history, summary  # noqa: F401
from attendance_sync.normalizers.summary import synthesize_daily_events  # noqa: F401

logger = logging.getLogger(__name__)


def normalize(
    records: list[dict],
    shape: SourceShape,
    school_code: str,
    period_count: int,
    start_date: date | None = None,
    end_date: date | None = None,
    school_year: str | None = None,
) -> NormalizationResult:
    """Convert raw source records of one shape into canonical attendance values."""
    normalizer = get_normalizer(SourceShape(shape))
    if normalizer is None:
        raise ValueError(f"No normalizer registered for shape: {shape}")

    ctx = NormalizeContext(
        school_code=str(school_code),
        period_count=period_count,
        start_date=start_date,
        end_date=end_date,
        school_year=school_year,
    )
    result = NormalizationResult()
    for record in records:
        if not isinstance(record, dict):
            result.reject("Record is not a JSON object", record_type=type(record).__name__)
            continue
        normalizer(record, ctx, result)

    logger.info(
        f"[{school_code}/{SourceShape(shape).value}] Normalized {len(records)} records: "
        f"{len(result.events)} events, {len(result.year_summaries)} year summaries, "
        f"{result.rejected} rejected"
    )
    return result
