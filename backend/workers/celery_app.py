"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from core.config import get_settings
from core.logging import configure_logging

settings = get_settings()

celery_app = Celery(
    "channelpilot",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.scheduler.*": {"queue": "jobs"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # Beat only enqueues durable job_tasks rows and triggers ticks; the
    # SQL task store owns retries and dead-lettering.
    beat_schedule={
        # ── Dispatch ───────────────────────────────────────────────
        "dispatch-daily-channel": {
            "task": "workers.scheduler.dispatch_jobs",
            "schedule": crontab(hour=2, minute=0),
            "kwargs": {"job_type": "daily_channel"},
            "options": {"queue": "jobs"},
        },
        "dispatch-weekly-channel": {
            "task": "workers.scheduler.dispatch_jobs",
            "schedule": crontab(hour=3, minute=0, day_of_week="sunday"),
            "kwargs": {"job_type": "weekly_channel"},
            "options": {"queue": "jobs"},
        },
        # ── Worker Loop ────────────────────────────────────────────
        "job-tick-1m": {
            "task": "workers.scheduler.run_tick",
            "schedule": crontab(minute="*"),
            "kwargs": {"limit": 10},
            "options": {"queue": "jobs", "expires": 55},
        },
        # ── Guardrails ─────────────────────────────────────────────
        "guardrails-hourly": {
            "task": "workers.scheduler.evaluate_guardrails",
            "schedule": crontab(minute=15),
            "options": {"queue": "jobs"},
        },
    },
)


@worker_process_init.connect
def _configure_worker_logging(**_kwargs):
    configure_logging(get_settings())


# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"], related_name="scheduler")
