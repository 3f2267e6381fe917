"""
Notification Queue — durable job store, polling, batching and retry bookkeeping.

Job lifecycle:
  pending → processing → completed | failed
  failed  → pending     (scheduled retry once backoff elapses, or operator retry)

Status-update jobs for the same order created within each other's batch
window collapse into a single message: the oldest job is the representative,
younger siblings are completed without sending.

The queue assumes exactly one consumer (see workers/notifications.py).
"""

from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import UUID

import structlog
from pydantic import BaseModel
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import JobStatus, NotificationJob, NotificationKind
from notifications.payloads import parse_payload

logger = structlog.get_logger()

RECENT_FAILURE_LIMIT = 10


# ──────────────────────────────────────────────────────────────────────────
# Enqueue
# ──────────────────────────────────────────────────────────────────────────


async def enqueue(
    db: AsyncSession,
    kind: NotificationKind | str,
    payload: dict | BaseModel,
    *,
    batch_window: int | None = None,
    max_attempts: int | None = None,
    delay: float | None = None,
    now: datetime | None = None,
) -> NotificationJob:
    """
    Insert a pending job. Storage errors propagate to the caller.

    ``delay`` is in seconds; the job becomes due at ``now + delay``.
    """
    settings = get_settings()
    kind = NotificationKind(kind)
    validated = parse_payload(kind, payload)
    created = now or datetime.utcnow()

    job = NotificationJob(
        kind=kind.value,
        status=JobStatus.PENDING.value,
        payload=validated.model_dump(mode="json"),
        attempts=0,
        max_attempts=max_attempts or settings.notification_max_attempts,
        batch_window_seconds=batch_window or settings.notification_batch_window_seconds,
        next_attempt_at=created + timedelta(seconds=delay or 0),
        created_at=created,
    )
    db.add(job)
    await db.commit()
    logger.info("notifications.enqueued", job_id=str(job.job_id), kind=kind.value)
    return job


async def notify_safely(
    db: AsyncSession,
    kind: NotificationKind | str,
    payload: dict | BaseModel,
    **options: Any,
) -> NotificationJob | None:
    """Enqueue for a business operation that must not fail on notification errors."""
    try:
        return await enqueue(db, kind, payload, **options)
    except (SQLAlchemyError, ValueError) as exc:
        logger.error("notifications.enqueue_failed", kind=str(kind), error=str(exc))
        await db.rollback()
        return None


# ──────────────────────────────────────────────────────────────────────────
# Polling & batching
# ──────────────────────────────────────────────────────────────────────────


async def find_due(db: AsyncSession, now: datetime | None = None) -> list[NotificationJob]:
    """Pending jobs with attempts left whose schedule has arrived, oldest first."""
    now = now or datetime.utcnow()
    result = await db.execute(
        select(NotificationJob)
        .where(
            NotificationJob.status == JobStatus.PENDING.value,
            NotificationJob.attempts < NotificationJob.max_attempts,
            or_(NotificationJob.next_attempt_at.is_(None), NotificationJob.next_attempt_at <= now),
        )
        .order_by(NotificationJob.created_at.asc())
    )
    return list(result.scalars().all())


async def find_batch_siblings(db: AsyncSession, job: NotificationJob) -> list[NotificationJob]:
    """
    Status-update jobs for the same order inside job's symmetric batch window.

    Covers pending jobs and failed jobs that still have retries left, plus
    ``job`` itself even when it is already marked processing.
    Returns [] for every other kind.
    """
    if job.kind != NotificationKind.STATUS_UPDATE.value:
        return []

    window = timedelta(seconds=job.batch_window_seconds)
    result = await db.execute(
        select(NotificationJob)
        .where(
            NotificationJob.kind == NotificationKind.STATUS_UPDATE.value,
            NotificationJob.created_at >= job.created_at - window,
            NotificationJob.created_at <= job.created_at + window,
            or_(
                NotificationJob.status == JobStatus.PENDING.value,
                and_(
                    NotificationJob.status == JobStatus.FAILED.value,
                    NotificationJob.attempts < NotificationJob.max_attempts,
                ),
                NotificationJob.job_id == job.job_id,
            ),
        )
        .order_by(NotificationJob.created_at.asc())
    )
    order_id = (job.payload or {}).get("order_id")
    return [sibling for sibling in result.scalars().all() if (sibling.payload or {}).get("order_id") == order_id]


def collapse_status_progression(jobs: Iterable[NotificationJob]) -> list[str]:
    """Distinct queued statuses in creation order, first occurrence wins."""
    progression: list[str] = []
    for job in jobs:
        status = (job.payload or {}).get("status_at_queue")
        if status and status not in progression:
            progression.append(status)
    return progression


# ──────────────────────────────────────────────────────────────────────────
# State transitions
# ──────────────────────────────────────────────────────────────────────────


async def mark_processing(db: AsyncSession, job: NotificationJob, now: datetime | None = None) -> None:
    job.status = JobStatus.PROCESSING.value
    job.last_attempt_at = now or datetime.utcnow()
    await db.commit()


async def mark_completed(
    db: AsyncSession,
    job_ids: UUID | Iterable[UUID],
    now: datetime | None = None,
) -> None:
    """Bulk-complete one or many jobs in a single statement."""
    ids = [job_ids] if isinstance(job_ids, UUID) else list(job_ids)
    if not ids:
        return
    await db.execute(
        update(NotificationJob)
        .where(NotificationJob.job_id.in_(ids))
        .values(status=JobStatus.COMPLETED.value, processed_at=now or datetime.utcnow())
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()


async def mark_failed(
    db: AsyncSession,
    job: NotificationJob,
    error: Exception | str,
    now: datetime | None = None,
) -> None:
    """
    Record a failed attempt.

    Backoff is 2^attempts seconds, using the attempt count before this
    failure. Once attempts reach max_attempts the job stays failed with no
    next attempt scheduled.
    """
    now = now or datetime.utcnow()
    previous_attempts = job.attempts or 0
    job.attempts = previous_attempts + 1
    job.status = JobStatus.FAILED.value
    job.error = str(error)
    job.last_attempt_at = now
    if job.attempts < job.max_attempts:
        job.next_attempt_at = now + timedelta(seconds=2**previous_attempts)
    else:
        job.next_attempt_at = None
    await db.commit()
    logger.warning(
        "notifications.job_failed",
        job_id=str(job.job_id),
        kind=job.kind,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        permanent=job.next_attempt_at is None,
        error=job.error,
    )


async def requeue_due_retries(db: AsyncSession, now: datetime | None = None) -> int:
    """Move failed jobs whose backoff has elapsed back to pending."""
    now = now or datetime.utcnow()
    result = await db.execute(
        update(NotificationJob)
        .where(
            NotificationJob.status == JobStatus.FAILED.value,
            NotificationJob.attempts < NotificationJob.max_attempts,
            NotificationJob.next_attempt_at.is_not(None),
            NotificationJob.next_attempt_at <= now,
        )
        .values(status=JobStatus.PENDING.value)
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()
    return result.rowcount or 0


# ──────────────────────────────────────────────────────────────────────────
# Operator actions
# ──────────────────────────────────────────────────────────────────────────


async def reset_failed(db: AsyncSession, job_ids: Iterable[UUID], now: datetime | None = None) -> int:
    """Operator retry: failed jobs go back to pending with a clean attempt count."""
    ids = list(job_ids)
    if not ids:
        return 0
    result = await db.execute(
        update(NotificationJob)
        .where(NotificationJob.job_id.in_(ids), NotificationJob.status == JobStatus.FAILED.value)
        .values(
            status=JobStatus.PENDING.value,
            attempts=0,
            error=None,
            last_attempt_at=None,
            next_attempt_at=now or datetime.utcnow(),
        )
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()
    return result.rowcount or 0


async def cleanup_completed(db: AsyncSession, days: int, now: datetime | None = None) -> int:
    """Delete completed jobs processed more than ``days`` ago."""
    if days < 1:
        raise ValueError("days must be at least 1")
    cutoff = (now or datetime.utcnow()) - timedelta(days=days)
    result = await db.execute(
        delete(NotificationJob)
        .where(
            NotificationJob.status == JobStatus.COMPLETED.value,
            NotificationJob.processed_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def purge_all(db: AsyncSession) -> int:
    result = await db.execute(delete(NotificationJob).execution_options(synchronize_session=False))
    await db.commit()
    return result.rowcount or 0


async def queue_status(db: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """Counts by state plus the most recent failures."""
    now = now or datetime.utcnow()
    since = now - timedelta(hours=24)

    async def _count(*criteria) -> int:
        result = await db.execute(select(func.count(NotificationJob.job_id)).where(*criteria))
        return int(result.scalar() or 0)

    pending = await _count(NotificationJob.status == JobStatus.PENDING.value, NotificationJob.processed_at.is_(None))
    processing = await _count(
        NotificationJob.status == JobStatus.PROCESSING.value, NotificationJob.processed_at.is_(None)
    )
    completed_24h = await _count(
        NotificationJob.status == JobStatus.COMPLETED.value, NotificationJob.processed_at >= since
    )
    failed = await _count(NotificationJob.status == JobStatus.FAILED.value)

    failures = await db.execute(
        select(NotificationJob)
        .where(NotificationJob.status == JobStatus.FAILED.value, NotificationJob.updated_at >= since)
        .order_by(NotificationJob.updated_at.desc())
        .limit(RECENT_FAILURE_LIMIT)
    )
    return {
        "status": {
            "pending": pending,
            "processing": processing,
            "completed_24h": completed_24h,
            "failed": failed,
        },
        "recent_failures": [
            {
                "job_id": job.job_id,
                "kind": job.kind,
                "error": job.error,
                "attempts": job.attempts,
                "last_attempt_at": job.last_attempt_at,
                "next_attempt_at": job.next_attempt_at,
                "created_at": job.created_at,
            }
            for job in failures.scalars().all()
        ],
    }
