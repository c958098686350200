"""Tests for the Celery task wrappers: broker settings and overlap guards."""

from datetime import date

import pytest

from attendance_sync.errors import OverlappingOperationError
from attendance_sync.services.orchestrator import SyncOrchestrator
from attendance_sync.tasks import sync_tasks
from attendance_sync.tasks.celery_app import celery_app

DAY = date(2024, 8, 15)


@pytest.fixture
def worker_session(db, monkeypatch):
    """Point the tasks at the test session."""
    monkeypatch.setattr(sync_tasks, "SyncSessionLocal", lambda: db)
    return db


@pytest.fixture
def running(db, make_school):
    school = make_school("1")
    orchestrator = SyncOrchestrator(db, client=None)
    operation = orchestrator.create_operation(DAY, DAY, school_ids=[school.id])
    orchestrator.claim(operation)
    return school, operation


def test_redelivery_waits_longer_than_a_task_can_run():
    visibility = celery_app.conf.broker_transport_options["visibility_timeout"]
    assert visibility > celery_app.conf.task_time_limit


def test_recompute_waits_for_overlapping_sync(worker_session, running):
    school, _ = running

    # Called directly, self.retry re-raises the overlap error
    with pytest.raises(OverlappingOperationError):
        sync_tasks.recompute_timeline(str(school.id), DAY.isoformat(), DAY.isoformat())


def test_recompute_outside_the_running_window_proceeds(worker_session, running):
    school, _ = running

    result = sync_tasks.recompute_timeline(str(school.id), "2024-09-01", "2024-09-30")

    assert result == {"summaries": 0}


def test_replay_waits_for_any_running_sync(worker_session, running):
    with pytest.raises(OverlappingOperationError):
        sync_tasks.replay_reconciliation_gaps()
