"""
Maintenance Workers — notification queue retention.

Schedule: See celery_app.py beat_schedule
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.maintenance.cleanup_notifications",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def cleanup_notifications(self, days: int | None = None):
    """Daily job: delete completed notification jobs past the retention window."""
    from core.config import get_settings
    from notifications.queue import cleanup_completed

    run_id = self.request.id or "manual"
    settings = get_settings()
    retention_days = days or settings.notification_retention_days

    async def _cleanup():
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                return await cleanup_completed(db, retention_days)
        finally:
            await engine.dispose()

    try:
        deleted = asyncio.run(_cleanup())
    except Exception as exc:
        logger.error("maintenance.notification_cleanup_failed", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)

    logger.info("maintenance.notification_cleanup_complete", run_id=run_id, deleted=deleted, days=retention_days)
    return {"status": "success", "deleted": deleted, "days": retention_days}
