"""Canonical attendance shapes shared by all normalizers.

Attendance codes map to presence states through one fixed table. A day's
state comes from its all-day code when the source sends one, otherwise it is
derived from the period vector.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from attendance_sync.enums import PresenceState, Provenance, SourceShape
from attendance_sync.errors import ValidationError

logger = logging.getLogger(__name__)

CODE_TO_STATE: dict[str, PresenceState] = {
    "": PresenceState.PRESENT,
    "P": PresenceState.PRESENT,
    "A": PresenceState.ABSENT_UNEXCUSED,
    "U": PresenceState.ABSENT_UNEXCUSED,
    "E": PresenceState.ABSENT_EXCUSED,
    "T": PresenceState.TARDY,
    # Suspension counts as an excused absence for aggregation
    "S": PresenceState.ABSENT_EXCUSED,
}

_COMPACT_DATE = re.compile(r"^\d{8}$")


@dataclass(frozen=True)
class NormalizedEvent:
    """One student-day keyed by source identifiers, before reconciliation."""

    source_student_id: str
    source_school_code: str
    attendance_date: date
    presence_state: PresenceState
    period_states: tuple[str | None, ...]
    source_shape: SourceShape
    provenance: Provenance = Provenance.OBSERVED
    all_day_code: str | None = None


@dataclass(frozen=True)
class YearSummaryRecord:
    """Summary-only attendance with no daily resolution."""

    source_student_id: str
    source_school_code: str
    school_year: str
    days_enrolled: int
    days_present: int

    @property
    def days_absent(self) -> int:
        return max(self.days_enrolled - self.days_present, 0)


@dataclass
class NormalizeContext:
    school_code: str
    period_count: int
    start_date: date | None = None
    end_date: date | None = None
    school_year: str | None = None

    def in_range(self, day: date) -> bool:
        if self.start_date and day < self.start_date:
            return False
        if self.end_date and day > self.end_date:
            return False
        return True


@dataclass
class NormalizationResult:
    events: list[NormalizedEvent] = field(default_factory=list)
    year_summaries: list[YearSummaryRecord] = field(default_factory=list)
    errors: list[ValidationError] = field(default_factory=list)
    out_of_range: int = 0
    unknown_codes: int = 0

    @property
    def rejected(self) -> int:
        return len(self.errors)

    def reject(self, message: str, **details: Any) -> None:
        self.errors.append(ValidationError(message, details=details))


def map_code(code: Any, result: NormalizationResult | None = None) -> PresenceState:
    """Map a source attendance code to a presence state."""
    key = "" if code is None else str(code).strip().upper()
    state = CODE_TO_STATE.get(key)
    if state is None:
        if result is not None:
            result.unknown_codes += 1
        logger.debug(f"Unknown attendance code {key!r}, treating as unexcused absence")
        return PresenceState.ABSENT_UNEXCUSED
    return state


def parse_source_date(value: Any) -> date | None:
    """Parse ``YYYYMMDD`` (int or str), ``YYYY-MM-DD`` or an ISO timestamp."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        if _COMPACT_DATE.match(text):
            return datetime.strptime(text, "%Y%m%d").date()
        return datetime.fromisoformat(text[:19]).date()
    except ValueError:
        return None


def derive_day_state(period_states: tuple[str | None, ...]) -> PresenceState:
    """Day-level state from a period vector when no all-day code is present."""
    recorded = [PresenceState(s) for s in period_states if s is not None]
    if not recorded:
        return PresenceState.PRESENT

    absent = [s for s in recorded if s.is_absent]
    if len(absent) == len(recorded):
        if all(s == PresenceState.ABSENT_EXCUSED for s in absent):
            return PresenceState.ABSENT_EXCUSED
        return PresenceState.ABSENT_UNEXCUSED
    if absent:
        return PresenceState.PARTIAL
    if any(s == PresenceState.TARDY for s in recorded):
        return PresenceState.TARDY
    return PresenceState.PRESENT


def student_id_of(record: dict) -> str | None:
    value = record.get("StudentID", record.get("ID"))
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def nested_entries(record: dict, key: str, result: NormalizationResult, student_id: str) -> list[dict]:
    """Dict entries of a nested list field; a malformed container or entry is rejected and skipped."""
    value = record.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        result.reject(
            f"{key} is not a list",
            student_id=student_id,
            field=key,
            value_type=type(value).__name__,
        )
        return []
    entries = []
    for position, entry in enumerate(value):
        if isinstance(entry, dict):
            entries.append(entry)
        else:
            result.reject(
                f"{key} entry is not a JSON object",
                student_id=student_id,
                field=key,
                position=position,
                value_type=type(entry).__name__,
            )
    return entries
