"""School calendar: which dates count as instructional days."""

from datetime import date, timedelta

from attendance_sync.config import get_settings
from attendance_sync.sources.shapes import school_year_bounds, school_year_for


class SchoolCalendar:
    """Weekdays minus configured holidays."""

    def __init__(self, holidays=None, school_year_start_month: int | None = None):
        settings = get_settings()
        self.holidays = set(settings.school_holidays if holidays is None else holidays)
        self.school_year_start_month = school_year_start_month or settings.school_year_start_month

    def is_school_day(self, day: date) -> bool:
        return day.weekday() < 5 and day not in self.holidays

    def school_days(self, start: date, end: date) -> list[date]:
        days = []
        current = start
        while current <= end:
            if self.is_school_day(current):
                days.append(current)
            current += timedelta(days=1)
        return days

    def school_year(self, day: date) -> str:
        return school_year_for(day, self.school_year_start_month)

    def year_bounds(self, label: str) -> tuple[date, date]:
        return school_year_bounds(label, self.school_year_start_month)
