"""Celery application configuration and beat schedule."""

from celery import Celery
from celery.schedules import crontab

from attendance_sync.config import get_settings

settings = get_settings()

celery_app = Celery(
    "attendance_sync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "attendance_sync.tasks.sync_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="US/Pacific",
    task_track_started=True,
    # A district-wide sync fetches every school sequentially
    task_time_limit=4 * 3600,
    task_soft_time_limit=4 * 3600 - 300,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Redis redelivers unacked tasks after the visibility timeout; keep it past the hard limit
    broker_transport_options={"visibility_timeout": 6 * 3600},
)

celery_app.conf.beat_schedule = {
    "dispatch-daily-sync": {
        "task": "attendance_sync.tasks.sync_tasks.dispatch_daily_sync",
        "schedule": crontab(minute=0, hour=2),
    },
    "replay-reconciliation-gaps": {
        "task": "attendance_sync.tasks.sync_tasks.replay_reconciliation_gaps",
        "schedule": crontab(minute=30, hour=5),
    },
}
