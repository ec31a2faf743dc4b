"""
Tests for safety backups of the live state.

Tests cover:
- Creating a backup of the database and images
- Restoring a backup over changed live state
- Cleanup of partial backups on failure
- Finding backups from disk
- Retention purge (best effort)
"""

import errno
import json
import shutil
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from platebook.backup.errors import SafetyBackupError
from platebook.backup.safety import (
    MANIFEST_FILE,
    PARTIAL_SUFFIX,
    SafetyBackupManager,
)
from platebook.storage.files import FileStoreError, LivePaths
from platebook.storage.models import SafetyBackupRecord


class SafetyTestCase(unittest.TestCase):
    """Live state with a database and two images."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.live = LivePaths(
            database=self.temp_dir / "data" / "SQLite" / "platebook.db",
            images_dir=self.temp_dir / "data" / "images",
        )
        self.live.database.parent.mkdir(parents=True)
        self.live.images_dir.mkdir(parents=True)
        self.live.database.write_bytes(b"original database")
        (self.live.images_dir / "a.jpg").write_bytes(b"image a")
        (self.live.images_dir / "b.jpg").write_bytes(b"image b")
        self.recovery_root = self.temp_dir / "cache" / "safety"
        self.manager = SafetyBackupManager(self.live, self.recovery_root)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def live_snapshot(self) -> tuple[bytes | None, dict[str, bytes]]:
        db = self.live.database.read_bytes() if self.live.database.exists() else None
        images = {}
        if self.live.images_dir.exists():
            images = {p.name: p.read_bytes() for p in self.live.images_dir.iterdir()}
        return db, images


class TestCreateSafetyBackup(SafetyTestCase):
    """Tests for create_safety_backup."""

    def test_copies_database_and_images(self):
        """Test the backup holds a copy of every live file."""
        record = self.manager.create_safety_backup()

        backup = record.path
        self.assertTrue(backup.is_dir())
        self.assertEqual((backup / "database.db").read_bytes(), b"original database")
        self.assertEqual((backup / "images" / "a.jpg").read_bytes(), b"image a")
        self.assertEqual((backup / "images" / "b.jpg").read_bytes(), b"image b")
        self.assertFalse(backup.name.endswith(PARTIAL_SUFFIX))

    def test_writes_manifest(self):
        """Test the manifest describes the backup."""
        record = self.manager.create_safety_backup()

        manifest = json.loads((record.path / MANIFEST_FILE).read_text())
        self.assertTrue(manifest["has_database"])
        self.assertEqual(manifest["database_name"], "platebook.db")
        self.assertEqual(manifest["images"], ["a.jpg", "b.jpg"])
        self.assertEqual(datetime.fromisoformat(manifest["created_at"]), record.date)

    def test_reports_progress_per_file(self):
        """Test on_file is called for the database and each image."""
        calls = []
        self.manager.create_safety_backup(on_file=lambda i, n: calls.append((i, n)))

        self.assertEqual(calls, [(0, 3), (1, 3), (2, 3)])

    def test_missing_live_state(self):
        """Test a first-run backup with no database and no images."""
        self.live.database.unlink()
        shutil.rmtree(self.live.images_dir)

        record = self.manager.create_safety_backup()

        manifest = json.loads((record.path / MANIFEST_FILE).read_text())
        self.assertFalse(manifest["has_database"])
        self.assertEqual(manifest["images"], [])

    def test_failure_leaves_nothing_behind(self):
        """Test a failed copy removes the partial directory."""
        with patch.object(
            self.manager.files,
            "copy_file",
            side_effect=FileStoreError("disk full"),
        ):
            with self.assertRaises(SafetyBackupError):
                self.manager.create_safety_backup()

        self.assertEqual(list(self.recovery_root.iterdir()), [])

    def test_backups_get_distinct_directories(self):
        """Test two backups never share a directory."""
        first = self.manager.create_safety_backup()
        second = self.manager.create_safety_backup()

        self.assertNotEqual(first.location, second.location)


class TestRestoreSafetyBackup(SafetyTestCase):
    """Tests for restore."""

    def test_restores_previous_state(self):
        """Test live state equals the backed up state after restore."""
        before = self.live_snapshot()
        record = self.manager.create_safety_backup()

        self.live.database.write_bytes(b"imported database")
        (self.live.images_dir / "a.jpg").unlink()
        (self.live.images_dir / "new.jpg").write_bytes(b"new image")

        self.manager.restore(record)

        self.assertEqual(self.live_snapshot(), before)

    def test_removes_sqlite_sidecars(self):
        """Test stale journal files are removed with the database."""
        record = self.manager.create_safety_backup()
        wal = self.live.database.with_name("platebook.db-wal")
        wal.write_bytes(b"stale wal")

        self.manager.restore(record)

        self.assertFalse(wal.exists())

    def test_restore_without_database(self):
        """Test restoring a backup taken before any database existed."""
        self.live.database.unlink()
        record = self.manager.create_safety_backup()
        self.live.database.write_bytes(b"imported")

        self.manager.restore(record)

        self.assertFalse(self.live.database.exists())

    def test_missing_backup(self):
        """Test restoring from a location that does not exist."""
        record = SafetyBackupRecord(
            date=datetime.now(UTC),
            location=str(self.temp_dir / "nowhere"),
        )

        with self.assertRaises(SafetyBackupError):
            self.manager.restore(record)

    def test_backup_missing_database_copy(self):
        """Test a backup whose database copy was lost."""
        record = self.manager.create_safety_backup()
        (record.path / "database.db").unlink()

        with self.assertRaises(SafetyBackupError):
            self.manager.restore(record)

        self.assertEqual(self.live.database.read_bytes(), b"original database")

    def test_copy_failure(self):
        """Test a failing copy surfaces as SafetyBackupError."""
        record = self.manager.create_safety_backup()

        with patch.object(
            self.manager.files,
            "write_bytes",
            side_effect=FileStoreError("read-only filesystem"),
        ):
            with self.assertRaises(SafetyBackupError):
                self.manager.restore(record)

    def test_raw_os_error_becomes_safety_backup_error(self):
        """Test an OSError from the filesystem surfaces as SafetyBackupError."""
        record = self.manager.create_safety_backup()

        with patch.object(
            self.manager.files,
            "copy_tree",
            side_effect=OSError(errno.EIO, "Input/output error"),
        ):
            with self.assertRaises(SafetyBackupError):
                self.manager.restore(record)


class TestListAndPurge(SafetyTestCase):
    """Tests for list_backups, latest, discard and purge_expired."""

    def make_old_backup(self, hours_ago: int) -> Path:
        created_at = datetime.now(UTC) - timedelta(hours=hours_ago)
        directory = self.recovery_root / f"safety-{created_at.strftime('%Y%m%dT%H%M%S%fZ')}"
        (directory / "images").mkdir(parents=True)
        (directory / MANIFEST_FILE).write_text(json.dumps({"created_at": created_at.isoformat()}))
        return directory

    def test_list_backups_oldest_first(self):
        """Test backups are rebuilt from disk in date order."""
        old = self.make_old_backup(30)
        record = self.manager.create_safety_backup()

        backups = self.manager.list_backups()

        self.assertEqual([b.location for b in backups], [str(old), record.location])
        self.assertEqual(self.manager.latest().location, record.location)

    def test_list_skips_partial_directories(self):
        """Test unfinished backups are never offered."""
        (self.recovery_root / f"safety-20260101T000000000000Z{PARTIAL_SUFFIX}").mkdir(parents=True)

        self.assertEqual(self.manager.list_backups(), [])
        self.assertIsNone(self.manager.latest())

    def test_date_from_directory_name(self):
        """Test a backup without a manifest is dated by its name."""
        directory = self.recovery_root / "safety-20260102T030405000006Z"
        directory.mkdir(parents=True)

        backups = self.manager.list_backups()

        self.assertEqual(backups[0].date, datetime(2026, 1, 2, 3, 4, 5, 6, tzinfo=UTC))

    def test_discard(self):
        """Test discarding one backup."""
        record = self.manager.create_safety_backup()

        self.assertTrue(self.manager.discard(record))
        self.assertFalse(record.path.exists())

    def test_purge_expired(self):
        """Test only backups past the retention window are removed."""
        old = self.make_old_backup(25)
        recent = self.manager.create_safety_backup()

        removed = self.manager.purge_expired(timedelta(hours=24))

        self.assertEqual(removed, 1)
        self.assertFalse(old.exists())
        self.assertTrue(recent.path.exists())

    def test_purge_keeps_protected_backup(self):
        """Test the keep argument protects one backup regardless of age."""
        old = self.make_old_backup(48)

        removed = self.manager.purge_expired(timedelta(hours=24), keep=old)

        self.assertEqual(removed, 0)
        self.assertTrue(old.exists())

    def test_purge_removes_stale_partials(self):
        """Test abandoned partial directories expire too."""
        partial = self.recovery_root / f"safety-20000101T000000000000Z{PARTIAL_SUFFIX}"
        partial.mkdir(parents=True)

        removed = self.manager.purge_expired(timedelta(hours=24))

        self.assertEqual(removed, 1)
        self.assertFalse(partial.exists())

    def test_purge_with_reference_time(self):
        """Test purge against an explicit clock."""
        record = self.manager.create_safety_backup()

        removed = self.manager.purge_expired(
            timedelta(hours=24),
            now=datetime.now(UTC) + timedelta(hours=25),
        )

        self.assertEqual(removed, 1)
        self.assertFalse(record.path.exists())

    def test_purge_failure_is_logged_not_raised(self):
        """Test purge is best effort."""
        self.make_old_backup(25)

        with patch.object(
            self.manager.files,
            "delete",
            side_effect=FileStoreError("permission denied"),
        ):
            with self.assertLogs("platebook.backup.safety", level="WARNING"):
                removed = self.manager.purge_expired(timedelta(hours=24))

        self.assertEqual(removed, 0)

    def test_purge_missing_root(self):
        """Test purge with no recovery directory at all."""
        self.assertEqual(self.manager.purge_expired(timedelta(hours=1)), 0)


if __name__ == "__main__":
    unittest.main()
