"""Shape-tagged source responses and endpoint paths per shape."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from attendance_sync.enums import SourceShape


@dataclass
class SourceResponse:
    """Raw records fetched from one endpoint family for one school."""

    shape: SourceShape
    school_code: str
    records: list[dict[str, Any]]
    start_date: date | None = None
    end_date: date | None = None
    school_year: str | None = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self.records)


def school_year_for(day: date, start_month: int = 8) -> str:
    """School year label (``2024-2025``) containing ``day``."""
    first = day.year if day.month >= start_month else day.year - 1
    return f"{first}-{first + 1}"


def school_year_bounds(label: str, start_month: int = 8) -> tuple[date, date]:
    """First and last calendar day of a school year label."""
    first = int(label.split("-")[0])
    start = date(first, start_month, 1)
    end = date(first + 1, start_month, 1) - timedelta(days=1)
    return start, end


def attendance_path(shape: SourceShape, school_code: str, school_year: str | None = None) -> str:
    if shape == SourceShape.DAY_LEVEL:
        return f"/schools/{school_code}/attendance"
    if shape == SourceShape.DETAIL_HISTORY:
        return f"/schools/{school_code}/AttendanceHistory/details/year/{school_year}"
    if shape == SourceShape.SUMMARY:
        return f"/schools/{school_code}/AttendanceHistory/summary"
    raise ValueError(f"Unknown source shape: {shape}")
