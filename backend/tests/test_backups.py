"""
Tests for backup runs, retention pruning and freshness monitoring.
"""

import tarfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from db.models import Backup
from workers.backups import (
    BackupError,
    backup_filename,
    check_backup_freshness,
    create_backup,
    list_backups,
    prune_backups,
)

NOW = datetime(2026, 3, 1, 2, 0, 0)


def fake_dump(target, database_url):
    target.write_text("-- dump of " + database_url)


def failing_dump(target, database_url):
    raise BackupError("pg_dump: connection refused")


@pytest.fixture
def dirs(tmp_path):
    uploads = tmp_path / "uploads"
    (uploads / "corals" / "sps").mkdir(parents=True)
    (uploads / "corals" / "sps" / "acro.jpg").write_bytes(b"jpeg")
    backups = tmp_path / "backups"
    return {"uploads": str(uploads), "backups": str(backups)}


def test_backup_filename():
    assert backup_filename("full", NOW) == "full_20260301T020000.tar.gz"


@pytest.mark.asyncio
class TestCreateBackup:

    async def test_full_backup_archives_dump_and_uploads(self, test_db, dirs):
        backup = await create_backup(
            test_db,
            "full",
            backup_dir=dirs["backups"],
            uploads_dir=dirs["uploads"],
            database_url="postgresql://coral@db/coral_manager",
            dump=fake_dump,
            now=NOW,
        )
        assert backup.status == "completed"
        assert backup.size_bytes > 0

        with tarfile.open(f"{dirs['backups']}/{backup.filename}", "r:gz") as archive:
            names = archive.getnames()
        assert "database.sql" in names
        assert "uploads/corals/sps/acro.jpg" in names

    async def test_images_backup_skips_database(self, test_db, dirs):
        backup = await create_backup(
            test_db,
            "images",
            backup_dir=dirs["backups"],
            uploads_dir=dirs["uploads"],
            database_url="unused",
            dump=failing_dump,
            now=NOW,
        )
        with tarfile.open(f"{dirs['backups']}/{backup.filename}", "r:gz") as archive:
            assert "database.sql" not in archive.getnames()

    async def test_failed_dump_marks_row_failed(self, test_db, dirs):
        with pytest.raises(BackupError, match="connection refused"):
            await create_backup(
                test_db,
                "database",
                backup_dir=dirs["backups"],
                uploads_dir=dirs["uploads"],
                database_url="postgresql://coral@db/coral_manager",
                dump=failing_dump,
                now=NOW,
            )
        [row] = await list_backups(test_db)
        assert row.status == "failed"
        assert "connection refused" in row.error

    async def test_invalid_type(self, test_db, dirs):
        with pytest.raises(ValueError):
            await create_backup(
                test_db,
                "everything",
                backup_dir=dirs["backups"],
                uploads_dir=dirs["uploads"],
                database_url="unused",
            )


@pytest.mark.asyncio
class TestRetentionAndFreshness:

    async def _completed(self, db, dirs, at: datetime) -> Backup:
        return await create_backup(
            db,
            "images",
            backup_dir=dirs["backups"],
            uploads_dir=dirs["uploads"],
            database_url="unused",
            now=at,
        )

    async def test_prune_removes_expired_rows_and_files(self, test_db, dirs):
        old = await self._completed(test_db, dirs, NOW - timedelta(days=10))
        recent = await self._completed(test_db, dirs, NOW - timedelta(days=1))

        assert await prune_backups(test_db, dirs["backups"], retention_days=7, now=NOW) == 1
        assert [backup.filename for backup in await list_backups(test_db)] == [recent.filename]
        assert not (Path(dirs["backups"]) / old.filename).exists()
        assert (Path(dirs["backups"]) / recent.filename).exists()

    async def test_no_backup_is_unhealthy(self, test_db):
        assert await check_backup_freshness(test_db, 48, now=NOW) == {
            "healthy": False,
            "latest": None,
            "age_hours": None,
        }

    async def test_freshness_uses_completion_time(self, test_db, dirs):
        backup = await self._completed(test_db, dirs, NOW)
        completed_at = backup.completed_at

        fresh = await check_backup_freshness(test_db, 48, now=completed_at + timedelta(hours=2))
        assert fresh["healthy"] is True
        assert fresh["latest"] == backup.filename

        stale = await check_backup_freshness(test_db, 48, now=completed_at + timedelta(hours=49))
        assert stale["healthy"] is False
        assert stale["age_hours"] == pytest.approx(49, abs=0.01)
