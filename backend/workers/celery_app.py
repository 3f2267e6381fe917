"""
Celery Application Configuration

Scheduled maintenance only: notification retention and backups. The
notification queue itself is drained by workers/notifications.py.
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "coral_manager",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.maintenance", "workers.backups"],
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
        "workers.maintenance.*": {"queue": "maintenance"},
        "workers.backups.*": {"queue": "backups"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # ── Notification Queue ──────────────────────────────────────
        "cleanup-completed-notifications-daily": {
            "task": "workers.maintenance.cleanup_notifications",
            "schedule": crontab(hour=1, minute=15),
            "options": {"queue": "maintenance"},
        },
        # ── Backups ────────────────────────────────────────────────
        "backup-full-nightly": {
            "task": "workers.backups.run_backup",
            "schedule": crontab(hour=settings.backup_schedule_hour, minute=0),
            "kwargs": {"backup_type": "full"},
            "options": {"queue": "backups"},
        },
        "backup-monitor-hourly": {
            "task": "workers.backups.monitor_backups",
            "schedule": crontab(minute=45),
            "options": {"queue": "backups"},
        },
    },
)
