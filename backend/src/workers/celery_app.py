"""Celery application and beat schedule for the matching service.

Run a worker with:
    celery -A workers.celery_app worker --loglevel=info
and the periodic jobs with:
    celery -A workers.celery_app beat
"""

from celery import Celery
from celery.schedules import crontab

from config import get_settings

settings = get_settings()

celery_app = Celery(
    "matching",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
)

celery_app.conf.beat_schedule = {
    "matching-sweep-expired": {
        "task": "matching.sweep_expired",
        "schedule": 60.0,
        "options": {"expires": 55},
    },
    "matching-relay-outbox": {
        "task": "matching.relay_outbox",
        "schedule": 15.0,
        "options": {"expires": 14},
    },
    "matching-archive-terminal-daily": {
        "task": "matching.archive_terminal",
        "schedule": crontab(hour=2, minute=0),  # 02:00 UTC
        "options": {"expires": 3600},
    },
}
