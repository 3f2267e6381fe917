"""
Notification Worker — single-consumer polling loop over the notification queue.

Each tick:
  1. Failed jobs whose backoff has elapsed go back to pending.
  2. Due jobs are processed one at a time, oldest first.
  3. Status updates for the same order inside one batch window collapse:
     the oldest pending job sends one message for the whole progression,
     younger jobs are completed without sending. While the oldest job waits
     on a retry, younger jobs stay pending so the retry covers them all.

SIGTERM / SIGINT set a stop flag; the in-flight tick finishes and no further
tick is scheduled. Run exactly one instance:

    python -m workers.notifications
"""

import asyncio
import signal
from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from db.models import JobStatus, NotificationJob
from notifications.dispatcher import NotificationDispatcher
from notifications.payloads import parse_payload
from notifications.queue import (
    collapse_status_progression,
    find_batch_siblings,
    find_due,
    mark_completed,
    mark_failed,
    mark_processing,
    requeue_due_retries,
)

logger = structlog.get_logger()


class NotificationWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        dispatcher: NotificationDispatcher | None = None,
        interval: float | None = None,
    ):
        if session_factory is None:
            from db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.interval = interval if interval is not None else get_settings().notification_poll_interval_seconds
        self._stop = asyncio.Event()

    def stop(self) -> None:
        logger.info("notification_worker.stop_requested")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run_tick(self, now: datetime | None = None) -> dict[str, int]:
        """Process every job due at ``now``. Returns outcome counts."""
        async with self.session_factory() as db:
            requeued = await requeue_due_retries(db, now)
            job_ids = [job.job_id for job in await find_due(db, now)]

        summary = {
            "requeued": requeued,
            "due": len(job_ids),
            "sent": 0,
            "batched": 0,
            "skipped": 0,
            "deferred": 0,
            "failed": 0,
        }
        for job_id in job_ids:
            async with self.session_factory() as db:
                outcome = await self.process_job(db, job_id, now)
            if outcome in summary:
                summary[outcome] += 1

        if job_ids or requeued:
            logger.info("notification_worker.tick_complete", **summary)
        return summary

    async def process_job(self, db: AsyncSession, job_id: UUID, now: datetime | None = None) -> str:
        """
        Deliver one job. Returns "sent", "batched", "skipped", "deferred",
        "failed", or "stale" when the job was no longer pending.
        """
        job = await db.get(NotificationJob, job_id, populate_existing=True)
        if job is None or job.status != JobStatus.PENDING.value:
            return "stale"

        log = logger.bind(job_id=str(job_id), kind=job.kind)
        siblings = await find_batch_siblings(db, job)
        representative = siblings[0] if len(siblings) > 1 else None
        if representative is not None and representative.status == JobStatus.FAILED.value:
            # The retry of the oldest job sends for the whole batch.
            log.info("notifications.batch_deferred", representative=str(representative.job_id))
            return "deferred"

        await mark_processing(db, job, now)
        try:
            payload = parse_payload(job.kind, job.payload)

            if representative is not None:
                if representative.job_id != job.job_id:
                    log.info("notifications.batched_into", representative=str(representative.job_id))
                    await mark_completed(db, job.job_id, now)
                    return "batched"

                progression = collapse_status_progression(siblings)
                sibling_ids = [sibling.job_id for sibling in siblings]
                log.info("notifications.batch_send", size=len(siblings), progression=progression)
                await self.dispatcher.dispatch(db, payload, progression=progression, batch_size=len(siblings))
                await mark_completed(db, sibling_ids, now)
                return "sent"

            delivered = await self.dispatcher.dispatch(db, payload)
            await mark_completed(db, job_id, now)
            if not delivered:
                log.info("notifications.skipped")
                return "skipped"
            log.info("notifications.sent")
            return "sent"
        except Exception as exc:
            log.warning("notifications.dispatch_failed", error=str(exc))
            await db.rollback()
            job = await db.get(NotificationJob, job_id, populate_existing=True)
            await mark_failed(db, job, exc, now)
            return "failed"

    async def run_forever(self) -> None:
        logger.info("notification_worker.started", interval=self.interval)
        while not self.stopping:
            try:
                await self.run_tick()
            except Exception as exc:
                logger.error("notification_worker.tick_failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("notification_worker.stopped")


async def _serve() -> None:
    from db.session import engine

    worker = NotificationWorker()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.stop)
    try:
        await worker.run_forever()
    finally:
        await engine.dispose()


def main() -> None:
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
