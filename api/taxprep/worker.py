from celery import Celery
from celery.schedules import crontab

from taxprep.core.config import settings

celery_app = Celery(
    "taxprep",
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
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

# ─── Scheduled tasks ──────────────────────────
celery_app.conf.beat_schedule = {
    "sweep-orphaned-income-entries-daily": {
        "task": "taxprep.services.maintenance.sweep_orphaned_income_entries",
        "schedule": crontab(hour=settings.orphan_sweep_hour, minute=0),
    },
    "fail-stale-processing-documents": {
        "task": "taxprep.services.maintenance.fail_stale_processing_documents",
        "schedule": crontab(minute="*/15"),
    },
}

# Explicitly include task modules so the worker registers them on startup.
# autodiscover_tasks() only looks for a "tasks.py" file, which we don't use.
celery_app.conf.include = [
    "taxprep.services.maintenance",
]
