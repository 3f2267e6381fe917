"""
Backup Workers — database / image archives with retention and freshness checks.

Backup types:
  - database: pg_dump of the application database
  - images:   the uploads directory
  - full:     both, in one archive

Every run records a Backup row (in_progress → completed | failed) and writes
one ``<type>_<timestamp>.tar.gz`` into ``backup_dir``. Runs older than
``backup_retention_days`` are pruned after each successful backup.

Schedule: See celery_app.py beat_schedule
"""

import asyncio
import os
import subprocess
import tarfile
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

import structlog
from sqlalchemy import select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db.models import Backup
from workers.celery_app import celery_app

logger = structlog.get_logger()

BACKUP_TYPES = ("full", "database", "images")
DATABASE_DUMP_NAME = "database.sql"
IMAGES_ARCNAME = "uploads"


class BackupError(Exception):
    """A backup run could not produce its archive."""


def backup_filename(backup_type: str, now: datetime) -> str:
    return f"{backup_type}_{now:%Y%m%dT%H%M%S}.tar.gz"


def dump_database(target: Path, database_url: str) -> None:
    """Write a plain-SQL pg_dump of ``database_url`` to ``target``."""
    url = make_url(database_url)
    command = ["pg_dump", "--no-owner", "--format=plain", "--file", str(target)]
    if url.host:
        command += ["--host", url.host]
    if url.port:
        command += ["--port", str(url.port)]
    if url.username:
        command += ["--username", url.username]
    command.append(url.database or "")

    env = dict(os.environ)
    if url.password:
        env["PGPASSWORD"] = url.password
    try:
        subprocess.run(command, env=env, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise BackupError("pg_dump is not installed") from exc
    except subprocess.CalledProcessError as exc:
        raise BackupError(f"Database backup failed: {exc.stderr.strip() or exc.returncode}") from exc


def build_archive(archive_path: Path, sources: list[tuple[Path, str]]) -> int:
    """Write sources (path, name-in-archive) into a gzip tarball. Returns its size."""
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive_path, "w:gz") as archive:
        for source, arcname in sources:
            archive.add(source, arcname=arcname)
    return archive_path.stat().st_size


async def create_backup(
    db: AsyncSession,
    backup_type: str,
    *,
    backup_dir: str,
    uploads_dir: str,
    database_url: str,
    dump: Callable[[Path, str], None] = dump_database,
    now: datetime | None = None,
) -> Backup:
    """
    Run one backup and record it.

    Raises:
      ValueError  — unknown backup type
      BackupError — the dump or archive step failed (the row is marked failed)
    """
    if backup_type not in BACKUP_TYPES:
        raise ValueError(f"Invalid backup type: {backup_type}")

    started = now or datetime.utcnow()
    filename = backup_filename(backup_type, started)
    archive_path = Path(backup_dir) / filename

    backup = Backup(filename=filename, backup_type=backup_type, status="in_progress", created_at=started)
    db.add(backup)
    await db.commit()
    log = logger.bind(backup_id=backup.backup_id, backup_type=backup_type)
    log.info("backup.started", filename=filename)

    try:
        with tempfile.TemporaryDirectory() as workdir:
            sources: list[tuple[Path, str]] = []
            if backup_type in ("full", "database"):
                dump_path = Path(workdir) / DATABASE_DUMP_NAME
                await asyncio.to_thread(dump, dump_path, database_url)
                sources.append((dump_path, DATABASE_DUMP_NAME))
            if backup_type in ("full", "images"):
                uploads = Path(uploads_dir)
                if uploads.is_dir():
                    sources.append((uploads, IMAGES_ARCNAME))
                else:
                    log.warning("backup.uploads_missing", uploads_dir=str(uploads))
            size = await asyncio.to_thread(build_archive, archive_path, sources)
    except (BackupError, OSError, tarfile.TarError) as exc:
        backup.status = "failed"
        backup.error = str(exc)
        backup.completed_at = datetime.utcnow()
        await db.commit()
        log.error("backup.failed", error=str(exc))
        raise BackupError(str(exc)) from exc

    backup.status = "completed"
    backup.size_bytes = size
    backup.completed_at = datetime.utcnow()
    await db.commit()
    log.info("backup.completed", size_bytes=size)
    return backup


async def prune_backups(
    db: AsyncSession,
    backup_dir: str,
    retention_days: int,
    now: datetime | None = None,
) -> int:
    """Delete backup rows and archives older than the retention window."""
    cutoff = (now or datetime.utcnow()) - timedelta(days=retention_days)
    result = await db.execute(select(Backup).where(Backup.created_at < cutoff))
    expired = list(result.scalars().all())
    for backup in expired:
        try:
            (Path(backup_dir) / backup.filename).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("backup.prune_file_failed", backup_id=backup.backup_id, error=str(exc))
            continue
        await db.delete(backup)
    await db.commit()
    if expired:
        logger.info("backup.pruned", count=len(expired), retention_days=retention_days)
    return len(expired)


async def check_backup_freshness(
    db: AsyncSession,
    max_age_hours: int,
    now: datetime | None = None,
) -> dict:
    """Report whether the newest completed backup is recent enough."""
    now = now or datetime.utcnow()
    result = await db.execute(
        select(Backup)
        .where(Backup.status == "completed")
        .order_by(Backup.completed_at.desc())
        .limit(1)
    )
    latest = result.scalar_one_or_none()
    if latest is None:
        logger.error("backup.none_completed")
        return {"healthy": False, "latest": None, "age_hours": None}

    age_hours = (now - latest.completed_at).total_seconds() / 3600
    healthy = age_hours <= max_age_hours
    if not healthy:
        logger.error("backup.stale", filename=latest.filename, age_hours=round(age_hours, 1))
    return {"healthy": healthy, "latest": latest.filename, "age_hours": round(age_hours, 2)}


async def list_backups(db: AsyncSession) -> list[Backup]:
    result = await db.execute(select(Backup).order_by(Backup.created_at.desc()))
    return list(result.scalars().all())


# ──────────────────────────────────────────────────────────────────────────
# Celery tasks
# ──────────────────────────────────────────────────────────────────────────


@celery_app.task(
    name="workers.backups.run_backup",
    bind=True,
    max_retries=1,
    default_retry_delay=600,
    acks_late=True,
)
def run_backup(self, backup_type: str = "full"):
    """Nightly job: archive the database and/or images, then prune old runs."""
    from core.config import get_settings

    run_id = self.request.id or "manual"
    settings = get_settings()

    async def _run():
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                backup = await create_backup(
                    db,
                    backup_type,
                    backup_dir=settings.backup_dir,
                    uploads_dir=settings.uploads_dir,
                    database_url=settings.database_url,
                )
                pruned = await prune_backups(db, settings.backup_dir, settings.backup_retention_days)
                return {"filename": backup.filename, "size_bytes": backup.size_bytes, "pruned": pruned}
        finally:
            await engine.dispose()

    try:
        summary = asyncio.run(_run())
    except BackupError as exc:
        logger.error("backup.task_failed", run_id=run_id, backup_type=backup_type, error=str(exc))
        raise self.retry(exc=exc)

    logger.info("backup.task_complete", run_id=run_id, backup_type=backup_type, **summary)
    return {"status": "success", **summary}


@celery_app.task(name="workers.backups.monitor_backups", bind=True, acks_late=True)
def monitor_backups(self):
    """Hourly job: flag when the newest completed backup is too old."""
    from core.config import get_settings

    settings = get_settings()

    async def _check():
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                return await check_backup_freshness(db, settings.backup_max_age_hours)
        finally:
            await engine.dispose()

    return asyncio.run(_check())
