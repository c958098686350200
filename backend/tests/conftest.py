"""Shared fixtures: in-memory SQLite database and a fake SIS over httpx.MockTransport."""

import uuid
from datetime import date

import httpx
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from attendance_sync.models import Base
from attendance_sync.models.student import StudentIdentity
from attendance_sync.services.reconciliation import create_school
from attendance_sync.sources.client import SISClient

SIS_BASE_URL = "https://sis.test/admin/api/v5"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs these to make SAVEPOINT behave
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_school(db):
    def _make(code: str, name: str | None = None, aliases=(), period_count: int = 7):
        return create_school(db, code, name or f"School {code}", period_count=period_count, aliases=list(aliases))
    return _make


@pytest.fixture
def enroll(db):
    """Create current StudentIdentity rows directly."""

    def _enroll(school, source_ids, grade: int = 6, effective_from: date = date(2024, 8, 1)):
        rows = []
        for sid in source_ids:
            row = StudentIdentity(
                id=uuid.uuid4(),
                canonical_student_id=uuid.uuid4(),
                source_student_id=str(sid),
                school_id=school.id,
                grade_level=grade,
                effective_from=effective_from,
                is_current=True,
            )
            db.add(row)
            rows.append(row)
        db.commit()
        return rows
    return _enroll


class FakeSIS:
    """Routes requests to per-path handlers and records every call."""

    def __init__(self):
        self.routes = {}
        self.calls: list[httpx.Request] = []

    def on(self, path: str, handler):
        """Register ``handler(request) -> httpx.Response`` or a static JSON payload."""
        self.routes[path] = handler
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path.removeprefix("/admin/api/v5")
        handler = self.routes.get(path)
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)

    def paths(self) -> list[str]:
        return [c.url.path.removeprefix("/admin/api/v5") for c in self.calls]


@pytest.fixture
def fake_sis():
    return FakeSIS()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def sis_client(fake_sis, sleeps):
    client = SISClient(
        base_url=SIS_BASE_URL,
        certificate="test-cert",
        min_interval=0,
        max_attempts=3,
        backoff_base=1.0,
        backoff_max=8.0,
        page_size=500,
        transport=httpx.MockTransport(fake_sis),
        sleep=sleeps.append,
    )
    yield client
    client.close()


def day_record(student_id, day: date, all_day: str = "", classes=None) -> dict:
    """One student-day in the SIS day-level attendance shape."""
    return {
        "StudentID": student_id,
        "CalendarDate": day.strftime("%Y%m%d"),
        "AllDayAttendanceCode": all_day,
        "Classes": classes or [],
    }
