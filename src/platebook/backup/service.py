"""
Backup service: export and import of the whole local state.

Export:
    Collecting -> Archiving -> Persisting -> Done
    Reads the live database and images, builds an archive, writes it to the
    export directory and records it as the last export. A failed export
    leaves no archive file behind and never touches the export record.

Import:
    SafetyBackup -> Validating -> Extracting -> Replacing -> Persisting -> Done
    Copies live state aside, decodes the archive, materializes it in a
    private staging directory and only then swaps it in. Any failure from
    Replacing onwards restores the safety backup. Everything before
    Replacing leaves live state untouched.

Only one export, import or restore runs at a time per service; a second
call raises BusyError. Operations run synchronously, or on a single
background worker via start_export() / start_import().
"""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from platebook.backup.codec import ArchiveCodec, ArchiveMetadata, DecodedArchive
from platebook.backup.errors import (
    ArchiveError,
    BusyError,
    EncodingError,
    ExportError,
    ExportPhase,
    ImportDataError,
    ImportPhase,
    OperationCancelledError,
    SafetyBackupError,
)
from platebook.backup.progress import ProgressCallback, ProgressReporter, span_progress
from platebook.backup.safety import DEFAULT_RETENTION, SafetyBackupManager
from platebook.storage.files import FileStore, FileStoreError, LivePaths
from platebook.storage.models import ExportRecord, SafetyBackupRecord, SafetyStatus
from platebook.storage.settings_store import (
    DEFAULT_SETTINGS_NAME,
    SettingsStore,
    SettingsStoreError,
)

if TYPE_CHECKING:
    from platebook.config.settings import Settings

logger = logging.getLogger(__name__)

EXPORT_PREFIX = "platebook_backup_"
STAGING_PREFIX = "import-staging-"
STAGED_DATABASE = "database.db"
STAGED_IMAGES = "images"
SAFETY_SUBDIR = "safety"


@dataclass
class ExportResult:
    """Outcome of a successful export."""

    path: Path
    size_bytes: int
    version: str
    exported_at: datetime
    image_count: int

    @property
    def record(self) -> ExportRecord:
        return ExportRecord(
            date=self.exported_at,
            path=str(self.path),
            size_bytes=self.size_bytes,
            version=self.version,
        )


@dataclass
class ImportResult:
    """
    Outcome of a successful import.

    The database connection held by the rest of the app is stale once this
    is returned; the caller must reload or restart the app.
    """

    source: str
    archive_version: str
    exported_at: datetime
    image_count: int
    safety_backup: SafetyBackupRecord
    restart_required: bool = True


@dataclass
class RestoreResult:
    """Outcome of restoring the previous state from a safety backup."""

    safety_backup: SafetyBackupRecord
    restart_required: bool = True


@dataclass
class StorageUsage:
    """Disk space used by the live state."""

    database_bytes: int
    images_bytes: int
    image_count: int

    @property
    def total_bytes(self) -> int:
        return self.database_bytes + self.images_bytes


class CancelToken:
    """
    Cooperative cancellation flag shared between caller and worker.

    Checked between phases and between images. Once an import has started
    replacing live state, cancellation is ignored.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled")


def _check_cancel(cancel: CancelToken | None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def _timestamp_slug(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


class BackupService:
    """
    Orchestrates export, import and restore of the live state.

    Example:
        service = BackupService.from_settings(load_config())
        result = service.export_data(progress=print)

        future = service.start_import(Path("platebook_backup.zip"), progress=print)
        outcome = future.result()
        if outcome.restart_required:
            ...

    Attributes:
        live: Location of the live database and images directory.
        export_dir: Where archives are written.
        work_dir: Private directory for staging and safety backups.
        app_version: Version recorded in exported archives.
    """

    # Guards the live-state swap and rollback across service instances
    live_state_lock = threading.RLock()

    def __init__(
        self,
        live: LivePaths,
        export_dir: Path,
        work_dir: Path,
        app_version: str,
        codec: ArchiveCodec | None = None,
        files: FileStore | None = None,
        safety: SafetyBackupManager | None = None,
        settings_store: SettingsStore | None = None,
        retention: timedelta = DEFAULT_RETENTION,
        text_safe: bool = False,
    ) -> None:
        self.live = live
        self.export_dir = Path(export_dir)
        self.work_dir = Path(work_dir)
        self.app_version = app_version
        self.codec = codec or ArchiveCodec()
        self.files = files or FileStore()
        self.safety = safety or SafetyBackupManager(live, self.work_dir / SAFETY_SUBDIR, self.files)
        self.settings_store = settings_store or SettingsStore(
            live.database.parent / DEFAULT_SETTINGS_NAME
        )
        self.retention = retention
        self.text_safe = text_safe

        self._operation_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._cleanup_timer: threading.Timer | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> BackupService:
        """Build a service from loaded configuration."""
        return cls(
            live=LivePaths(database=settings.database_path, images_dir=settings.images_path),
            export_dir=Path(settings.backup.export_dir),
            work_dir=Path(settings.backup.work_dir),
            app_version=settings.resolved_app_version(),
            settings_store=SettingsStore(settings.settings_path),
            retention=timedelta(hours=settings.backup.safety_retention_hours),
            text_safe=settings.backup.text_safe_archives,
        )

    # Operation entry points

    @property
    def busy(self) -> bool:
        return self._operation_lock.locked()

    def export_data(
        self,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> ExportResult:
        """
        Export live state to a new archive file.

        Raises:
            BusyError: If another operation is running.
            ExportError: If any phase fails.
            OperationCancelledError: If cancelled; nothing is written.
        """
        self._acquire("export")
        return self._run_locked(self._export, ProgressReporter(progress), cancel)

    def import_data(
        self,
        source: Path | str | bytes,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> ImportResult:
        """
        Replace live state with the contents of an archive.

        Args:
            source: Archive path, or the archive bytes.

        Raises:
            BusyError: If another operation is running.
            ImportDataError: If any phase fails; see its state_consistent
                and phase attributes for what happened to live state.
            OperationCancelledError: If cancelled before replacement.
        """
        self._acquire("import")
        return self._run_locked(self._import, source, ProgressReporter(progress), cancel)

    def start_export(
        self,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> Future[ExportResult]:
        """Run export_data on the background worker."""
        return self._submit("export", self._export, ProgressReporter(progress), cancel)

    def start_import(
        self,
        source: Path | str | bytes,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> Future[ImportResult]:
        """Run import_data on the background worker."""
        return self._submit("import", self._import, source, ProgressReporter(progress), cancel)

    def restore_previous(self) -> RestoreResult:
        """
        Put back the live state saved before the last import.

        Raises:
            BusyError: If another operation is running.
            SafetyBackupError: If no safety backup exists or restoring fails.
        """
        self._acquire("restore")
        return self._run_locked(self._restore_previous)

    def close(self) -> None:
        """Stop the background worker and any pending cleanup timer."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        with self._executor_lock:
            if self._cleanup_timer is not None:
                self._cleanup_timer.cancel()
                self._cleanup_timer = None

    # Bookkeeping queries

    def get_last_export_info(self) -> ExportRecord | None:
        return self.settings_store.get_export_record()

    def last_safety_backup(self) -> SafetyBackupRecord | None:
        """
        The most recent usable safety backup.

        Uses the settings record when it points at an existing backup, and
        the newest backup on disk otherwise.
        """
        stored = self._read_safety_record()
        if stored is not None and stored.path.is_dir():
            return stored
        return self.safety.latest()

    def interrupted_import(self) -> SafetyBackupRecord | None:
        """
        The safety backup of an import that never finished, if any.

        An import records its safety backup as pending before touching live
        state. A pending record seen outside a running import means the
        process stopped mid-import, and restore_previous() should be offered.
        """
        if self.busy:
            return None
        stored = self._read_safety_record()
        if stored is None or stored.status is not SafetyStatus.PENDING:
            return None
        if not stored.path.is_dir():
            logger.warning(f"Interrupted import's safety backup is missing: {stored.location}")
            return None
        return stored

    def storage_usage(self) -> StorageUsage:
        images = self.files.list_files(self.live.images_dir)
        return StorageUsage(
            database_bytes=self.files.size_of(self.live.database),
            images_bytes=sum(self.files.size_of(p) for p in images),
            image_count=len(images),
        )

    def preview_archive(self, source: Path | str | bytes) -> ArchiveMetadata:
        """
        Read an archive's metadata without importing it.

        Raises:
            InvalidArchiveError, CorruptArchiveError: If unreadable.
            FileStoreError: If the file cannot be read.
        """
        data = source if isinstance(source, bytes) else self.files.read_bytes(Path(source))
        return self.codec.read_metadata(data)

    def run_startup_maintenance(self) -> dict[str, int]:
        """
        Housekeeping to run once per app launch.

        Creates missing app directories, purges safety backups past the
        retention window (retention timers do not survive a restart, so
        expiry is checked here) and removes staging directories abandoned by
        an interrupted import. The safety backup of an interrupted import is
        kept whatever its age. Failures are logged, never raised.
        """
        try:
            self.files.ensure_app_directories(self.live.database, self.live.images_dir)
        except FileStoreError as e:
            logger.warning(f"Could not create app directories: {e}")

        interrupted = self.interrupted_import()
        if interrupted is not None:
            logger.warning(
                f"An import was interrupted; previous data is kept in {interrupted.location}"
            )
        purged = self.safety.purge_expired(
            self.retention,
            keep=interrupted.path if interrupted is not None else None,
        )

        stale_staging = 0
        if not self.busy and self.work_dir.is_dir():
            for entry in self.work_dir.iterdir():
                if entry.is_dir() and entry.name.startswith(STAGING_PREFIX):
                    try:
                        self.files.delete(entry)
                        stale_staging += 1
                    except FileStoreError as e:
                        logger.warning(f"Could not remove abandoned staging {entry}: {e}")

        if purged or stale_staging:
            logger.info(
                f"Startup maintenance: {purged} safety backups purged, "
                f"{stale_staging} staging directories removed"
            )
        return {
            "safety_backups_purged": purged,
            "staging_removed": stale_staging,
            "interrupted_import": int(interrupted is not None),
        }

    # Locking helpers

    def _acquire(self, operation: str) -> None:
        if not self._operation_lock.acquire(blocking=False):
            raise BusyError(f"Cannot start {operation}: another backup operation is in progress")

    def _run_locked(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return func(*args)
        finally:
            self._operation_lock.release()

    def _submit(self, operation: str, func: Callable[..., Any], *args: Any) -> Future:
        self._acquire(operation)
        try:
            return self._get_executor().submit(self._run_locked, func, *args)
        except RuntimeError:
            self._operation_lock.release()
            raise

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1,
                    thread_name_prefix="platebook-backup",
                )
            return self._executor

    # Export

    def _export(self, reporter: ProgressReporter, cancel: CancelToken | None) -> ExportResult:
        reporter.reset()
        logger.info("Export started")

        # Collecting
        reporter.report(10)
        try:
            db_bytes = self.files.read_bytes(self.live.database)
            images = self.files.list_files(self.live.images_dir)
        except FileStoreError as e:
            raise ExportError(ExportPhase.COLLECT, str(e), e) from e
        reporter.report(30)
        _check_cancel(cancel)
        logger.debug(f"Collected {len(db_bytes):,} byte database and {len(images)} images")

        # Archiving
        exported_at = datetime.now(UTC)
        metadata = ArchiveMetadata(version=self.app_version, exported_at=exported_at)

        def on_image(index: int, total: int) -> None:
            reporter.report(span_progress(30, 40, index, total))
            _check_cancel(cancel)

        sources = [(p.name, functools.partial(self.files.read_bytes, p)) for p in images]
        try:
            archive = self.codec.encode(
                db_bytes,
                metadata,
                sources,
                text_safe=self.text_safe,
                on_image=on_image,
            )
        except EncodingError as e:
            raise ExportError(ExportPhase.ARCHIVE, str(e), e) from e
        reporter.report(80)
        _check_cancel(cancel)

        # Persisting
        archive_path = self._new_export_path(exported_at)
        try:
            self.files.write_bytes(archive_path, archive)
            size_bytes = self.files.size_of(archive_path)
        except FileStoreError as e:
            self._remove_failed_export(archive_path)
            raise ExportError(ExportPhase.WRITE, str(e), e) from e
        reporter.report(90)

        result = ExportResult(
            path=archive_path,
            size_bytes=size_bytes,
            version=self.app_version,
            exported_at=exported_at,
            image_count=len(images),
        )
        try:
            self.settings_store.save_export_record(result.record)
        except SettingsStoreError as e:
            self._remove_failed_export(archive_path)
            raise ExportError(ExportPhase.RECORD, str(e), e) from e
        reporter.report(95)

        reporter.report(100)
        logger.info(f"Export complete: {archive_path} ({size_bytes:,} bytes, {len(images)} images)")
        return result

    def _new_export_path(self, exported_at: datetime) -> Path:
        suffix = ".zip.b64" if self.text_safe else ".zip"
        base = f"{EXPORT_PREFIX}{_timestamp_slug(exported_at)}"
        candidate = self.export_dir / f"{base}{suffix}"
        counter = 1
        while candidate.exists():
            candidate = self.export_dir / f"{base}-{counter}{suffix}"
            counter += 1
        return candidate

    def _remove_failed_export(self, archive_path: Path) -> None:
        try:
            self.files.delete(archive_path)
        except FileStoreError as e:
            logger.error(f"Could not remove incomplete archive {archive_path}: {e}")

    # Import

    def _import(
        self,
        source: Path | str | bytes,
        reporter: ProgressReporter,
        cancel: CancelToken | None,
    ) -> ImportResult:
        reporter.reset()
        source_label = "<bytes>" if isinstance(source, bytes) else str(source)
        logger.info(f"Import started from {source_label}")

        archive_bytes = self._read_archive_source(source)
        reporter.report(5)
        _check_cancel(cancel)

        # SafetyBackup
        previous = self._read_safety_record()
        try:
            safety_record = self.safety.create_safety_backup(
                on_file=lambda index, total: reporter.report(span_progress(20, 30, index, total)),
            )
        except SafetyBackupError as e:
            raise ImportDataError(ImportPhase.SAFETY_BACKUP_FAILED, str(e), e) from e
        pending = safety_record.with_status(SafetyStatus.PENDING)
        try:
            self.settings_store.save_safety_backup_record(pending)
        except SettingsStoreError as e:
            self.safety.discard(safety_record)
            raise ImportDataError(
                ImportPhase.SAFETY_BACKUP_FAILED,
                f"Cannot record safety backup: {e}",
                e,
            ) from e
        reporter.report(50)

        staging = self.work_dir / f"{STAGING_PREFIX}{_timestamp_slug(datetime.now(UTC))}"
        try:
            try:
                decoded = self._validate_and_stage(archive_bytes, staging, reporter, cancel)
            except Exception as e:
                # Live state untouched; the previous safety backup stays the undo point
                logger.info(f"Import stopped before replacing live state: {e}")
                self._abandon_safety_backup(pending, previous)
                raise

            # Replacing and Persisting; any failure from here is rolled back
            with self.live_state_lock:
                try:
                    self._replace_live_state(staging)
                    reporter.report(95)
                    imported = pending.with_status(SafetyStatus.IMPORTED)
                    self.settings_store.save_safety_backup_record(imported)
                except Exception as e:
                    logger.exception("Import failed after live state replacement began")
                    self._rollback(pending, e)
        finally:
            self._discard_staging(staging)

        self._schedule_cleanup()
        reporter.report(100)
        logger.info(
            f"Import complete: archive version {decoded.metadata.version}, "
            f"{len(decoded.image_files)} images; restart required"
        )
        return ImportResult(
            source=source_label,
            archive_version=decoded.metadata.version,
            exported_at=decoded.metadata.exported_at,
            image_count=len(decoded.image_files),
            safety_backup=imported,
        )

    def _schedule_cleanup(self) -> None:
        """
        Purge expired safety backups once the retention window has passed.

        The timer lives only as long as this process; run_startup_maintenance()
        catches up on purges missed across restarts.
        """
        delay = self.retention.total_seconds()
        with self._executor_lock:
            if self._cleanup_timer is not None:
                self._cleanup_timer.cancel()
            timer = threading.Timer(delay, self.safety.purge_expired, args=(self.retention,))
            timer.daemon = True
            timer.name = "platebook-safety-cleanup"
            self._cleanup_timer = timer
            timer.start()
        logger.debug(f"Safety backup cleanup scheduled in {delay:.0f} seconds")

    def _read_archive_source(self, source: Path | str | bytes) -> bytes:
        if isinstance(source, bytes):
            return source
        try:
            return self.files.read_bytes(Path(source))
        except FileStoreError as e:
            raise ImportDataError(ImportPhase.INVALID_ARCHIVE, f"Cannot read archive: {e}", e) from e

    def _validate_and_stage(
        self,
        archive_bytes: bytes,
        staging: Path,
        reporter: ProgressReporter,
        cancel: CancelToken | None,
    ) -> DecodedArchive:
        _check_cancel(cancel)

        # Validating
        try:
            decoded = self.codec.decode(archive_bytes)
        except ArchiveError as e:
            raise ImportDataError(
                ImportPhase.INVALID_ARCHIVE, str(e), e
            ) from e
        reporter.report(60)
        logger.info(
            f"Archive valid: version {decoded.metadata.version}, "
            f"exported {decoded.metadata.exported_at.isoformat()}"
        )
        _check_cancel(cancel)

        # Extracting
        try:
            self.files.delete(staging)
            images_dir = self.files.ensure_dir(staging / STAGED_IMAGES)
            self.files.write_bytes(staging / STAGED_DATABASE, decoded.db_bytes)
            total = len(decoded.image_files)
            for index, (name, data) in enumerate(decoded.image_files):
                self.files.write_bytes(images_dir / name, data)
                reporter.report(span_progress(60, 20, index, total))
                _check_cancel(cancel)
        except FileStoreError as e:
            raise ImportDataError(
                ImportPhase.EXTRACTION_FAILED, str(e), e
            ) from e
        reporter.report(80)
        _check_cancel(cancel)
        return decoded

    def _read_safety_record(self) -> SafetyBackupRecord | None:
        try:
            return self.settings_store.get_safety_backup_record()
        except SettingsStoreError as e:
            logger.warning(f"Could not read safety backup record: {e}")
            return None

    def _abandon_safety_backup(
        self,
        record: SafetyBackupRecord,
        previous: SafetyBackupRecord | None,
    ) -> None:
        """Drop a safety backup whose import never touched live state."""
        self.safety.discard(record)
        try:
            self.settings_store.restore_safety_backup_record(previous)
        except SettingsStoreError as e:
            logger.warning(f"Could not restore previous safety backup record: {e}")

    def _replace_live_state(self, staging: Path) -> None:
        logger.info("Replacing live database and images")
        for sidecar in self.live.database_sidecars():
            self.files.delete(sidecar)
        self.files.delete(self.live.database)
        self.files.delete(self.live.images_dir)
        self.files.move(staging / STAGED_DATABASE, self.live.database)
        self.files.move(staging / STAGED_IMAGES, self.live.images_dir)

    def _rollback(self, safety_record: SafetyBackupRecord, error: Exception) -> None:
        """Restore the safety backup and raise the matching ImportDataError."""
        logger.warning(f"Rolling back import from safety backup {safety_record.location}")
        try:
            self.safety.restore(safety_record)
        except Exception as rollback_error:
            logger.critical(
                f"Rollback failed; live state may be inconsistent. "
                f"Recover manually from {safety_record.location}"
            )
            raise ImportDataError(
                ImportPhase.ROLLBACK_FAILED,
                f"{error}; rollback also failed: {rollback_error}. "
                f"Your previous data is in {safety_record.location}",
                rollback_error,
                state_consistent=False,
                safety_backup=safety_record,
            ) from rollback_error

        rolled_back = safety_record.with_status(SafetyStatus.ROLLED_BACK)
        try:
            self.settings_store.save_safety_backup_record(rolled_back)
        except SettingsStoreError as e:
            logger.warning(f"Could not record safety backup after rollback: {e}")

        raise ImportDataError(
            ImportPhase.REPLACED_BUT_ROLLED_BACK,
            str(error),
            error,
            state_consistent=True,
            safety_backup=rolled_back,
        ) from error

    def _discard_staging(self, staging: Path) -> None:
        try:
            self.files.delete(staging)
        except FileStoreError as e:
            logger.warning(f"Could not remove staging directory {staging}: {e}")

    # Restore previous

    def _restore_previous(self) -> RestoreResult:
        record = self.last_safety_backup()
        if record is None:
            raise SafetyBackupError("No safety backup available")

        with self.live_state_lock:
            self.safety.restore(record)

        restored = record.with_status(SafetyStatus.RESTORED)
        try:
            self.settings_store.save_safety_backup_record(restored)
        except SettingsStoreError as e:
            logger.warning(f"Could not record safety backup after restore: {e}")

        logger.info(f"Restored previous state from {record.location}; restart required")
        return RestoreResult(safety_backup=restored)
