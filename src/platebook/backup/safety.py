"""
Safety backups of the live state.

Before an import replaces the live database and images, a full copy of both
is taken into a fresh recovery directory:

    <recovery_root>/
        safety-20260101T120000123456Z/
            manifest.json       created_at, whether a database existed, image names
            database.db
            images/
                ...

The copy is built in a ".partial" sibling and renamed into place only once
complete, so a directory without that suffix is always a whole backup. The
manifest lets a backup be found again from disk alone, even if the settings
row pointing at it was lost.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from platebook.backup.errors import SafetyBackupError
from platebook.storage.files import FileStore, FileStoreError, LivePaths
from platebook.storage.models import SafetyBackupRecord

logger = logging.getLogger(__name__)

SAFETY_PREFIX = "safety-"
PARTIAL_SUFFIX = ".partial"
MANIFEST_FILE = "manifest.json"
DATABASE_FILE = "database.db"
IMAGES_DIR = "images"
NAME_FORMAT = "%Y%m%dT%H%M%S%fZ"

DEFAULT_RETENTION = timedelta(hours=24)


class SafetyBackupManager:
    """
    Create, restore and expire safety backups of the live state.

    Example:
        manager = SafetyBackupManager(live_paths, Path("~/.platebook/cache/safety"))
        record = manager.create_safety_backup()
        ...
        manager.restore(record)
        manager.purge_expired(timedelta(hours=24))

    Attributes:
        live: Paths of the live database and images directory.
        recovery_root: Directory that holds one subdirectory per backup.
    """

    def __init__(
        self,
        live: LivePaths,
        recovery_root: Path,
        files: FileStore | None = None,
    ) -> None:
        self.live = live
        self.recovery_root = Path(recovery_root)
        self.files = files or FileStore()

    def create_safety_backup(
        self,
        on_file: Callable[[int, int], None] | None = None,
    ) -> SafetyBackupRecord:
        """
        Copy the live database and images into a new recovery directory.

        Args:
            on_file: Called as on_file(index, total) after each copied file.

        Returns:
            Record pointing at the completed backup.

        Raises:
            SafetyBackupError: If any copy fails. No partial directory is left
                behind.
        """
        created_at = datetime.now(UTC)
        target = self._new_backup_dir(created_at)
        partial = target.with_name(target.name + PARTIAL_SUFFIX)

        try:
            self.files.ensure_dir(partial)
            images = self.files.list_files(self.live.images_dir)
            has_database = self.files.exists(self.live.database)
            total = len(images) + 1

            if has_database:
                self.files.copy_file(self.live.database, partial / DATABASE_FILE)
            if on_file is not None:
                on_file(0, total)

            images_copy = self.files.ensure_dir(partial / IMAGES_DIR)
            for index, image in enumerate(images, start=1):
                self.files.copy_file(image, images_copy / image.name)
                if on_file is not None:
                    on_file(index, total)

            manifest = {
                "created_at": created_at.isoformat(),
                "has_database": has_database,
                "database_name": self.live.database.name,
                "images": [image.name for image in images],
            }
            self.files.write_bytes(
                partial / MANIFEST_FILE,
                json.dumps(manifest, indent=2).encode("utf-8"),
            )
            self.files.move(partial, target)
        except (FileStoreError, OSError) as e:
            self._discard_partial(partial)
            raise SafetyBackupError(f"Cannot create safety backup: {e}") from e

        logger.info(f"Safety backup created: {target} ({len(images)} images)")
        return SafetyBackupRecord(date=created_at, location=str(target))

    def restore(self, record: SafetyBackupRecord) -> None:
        """
        Copy a safety backup back over the live database and images.

        The database file is replaced atomically. Images are staged next to
        the live directory and swapped in once all of them are copied.

        Raises:
            SafetyBackupError: If the backup is missing or a copy fails.
        """
        source = record.path
        if not source.is_dir():
            raise SafetyBackupError(f"Safety backup not found: {source}")

        manifest = self._read_manifest(source)
        database_copy = source / DATABASE_FILE
        has_database = database_copy.exists()
        if manifest is not None and manifest.get("has_database") and not has_database:
            raise SafetyBackupError(f"Safety backup is missing its database copy: {source}")

        images_tmp = self.live.images_dir.with_name(self.live.images_dir.name + ".restore-tmp")
        try:
            self.files.delete(images_tmp)
            self.files.copy_tree(source / IMAGES_DIR, images_tmp)

            for sidecar in self.live.database_sidecars():
                self.files.delete(sidecar)
            if has_database:
                self.files.write_bytes(self.live.database, self.files.read_bytes(database_copy))
            else:
                self.files.delete(self.live.database)

            self.files.delete(self.live.images_dir)
            self.files.move(images_tmp, self.live.images_dir)
        except (FileStoreError, OSError) as e:
            raise SafetyBackupError(f"Cannot restore safety backup {source}: {e}") from e

        logger.info(f"Live state restored from safety backup {source}")

    def discard(self, record: SafetyBackupRecord) -> bool:
        """Delete one safety backup. Returns False if deletion failed."""
        try:
            self.files.delete(record.path)
        except FileStoreError as e:
            logger.warning(f"Could not discard safety backup {record.location}: {e}")
            return False
        logger.info(f"Discarded safety backup {record.location}")
        return True

    def list_backups(self) -> list[SafetyBackupRecord]:
        """All complete safety backups on disk, oldest first."""
        if not self.recovery_root.is_dir():
            return []
        records = []
        for entry in self.recovery_root.iterdir():
            if not self._is_backup_dir(entry) or entry.name.endswith(PARTIAL_SUFFIX):
                continue
            created_at = self._created_at(entry)
            if created_at is not None:
                records.append(SafetyBackupRecord(date=created_at, location=str(entry)))
        records.sort(key=lambda r: r.date)
        return records

    def latest(self) -> SafetyBackupRecord | None:
        """Newest complete safety backup on disk."""
        records = self.list_backups()
        return records[-1] if records else None

    def purge_expired(
        self,
        retention: timedelta = DEFAULT_RETENTION,
        keep: Path | None = None,
        now: datetime | None = None,
    ) -> int:
        """
        Delete safety backups older than the retention window.

        Best effort: failures are logged and never raised. Abandoned
        ".partial" directories are removed under the same rule.

        Args:
            retention: Maximum age of a backup.
            keep: A backup directory that must survive regardless of age.
            now: Reference time (defaults to current UTC time).

        Returns:
            Number of directories removed.
        """
        now = now or datetime.now(UTC)
        removed = 0
        try:
            entries = list(self.recovery_root.iterdir()) if self.recovery_root.is_dir() else []
        except OSError as e:
            logger.warning(f"Could not scan safety backups in {self.recovery_root}: {e}")
            return 0

        for entry in entries:
            if not self._is_backup_dir(entry):
                continue
            if keep is not None and entry.resolve() == Path(keep).resolve():
                continue
            created_at = self._created_at(entry)
            if created_at is None or now - created_at < retention:
                continue
            try:
                self.files.delete(entry)
                removed += 1
                logger.info(f"Purged expired safety backup {entry.name}")
            except FileStoreError as e:
                logger.warning(f"Could not purge safety backup {entry}: {e}")

        return removed

    def _new_backup_dir(self, created_at: datetime) -> Path:
        base = self.recovery_root / f"{SAFETY_PREFIX}{created_at.strftime(NAME_FORMAT)}"
        candidate = base
        counter = 1
        while candidate.exists() or candidate.with_name(candidate.name + PARTIAL_SUFFIX).exists():
            candidate = base.with_name(f"{base.name}-{counter}")
            counter += 1
        return candidate

    def _discard_partial(self, partial: Path) -> None:
        try:
            self.files.delete(partial)
        except FileStoreError as e:
            logger.warning(f"Could not remove incomplete safety backup {partial}: {e}")

    @staticmethod
    def _is_backup_dir(entry: Path) -> bool:
        return entry.is_dir() and entry.name.startswith(SAFETY_PREFIX)

    def _read_manifest(self, directory: Path) -> dict[str, Any] | None:
        manifest_path = directory / MANIFEST_FILE
        if not manifest_path.exists():
            return None
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable safety backup manifest {manifest_path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def _created_at(self, directory: Path) -> datetime | None:
        """Creation time from the manifest, the directory name, or mtime."""
        manifest = self._read_manifest(directory)
        if manifest and manifest.get("created_at"):
            try:
                created_at = datetime.fromisoformat(manifest["created_at"])
                return created_at if created_at.tzinfo else created_at.replace(tzinfo=UTC)
            except ValueError:
                pass

        stamp = directory.name[len(SAFETY_PREFIX):].split(".")[0].split("-")[0]
        try:
            return datetime.strptime(stamp, NAME_FORMAT).replace(tzinfo=UTC)
        except ValueError:
            pass

        try:
            return datetime.fromtimestamp(directory.stat().st_mtime, UTC)
        except OSError:
            return None
