"""
Backup and restore engine for Platebook.

This package exports the whole local state (the SQLite database and the
photo directory) into a single portable archive, and imports such an
archive back in place of the live state with an automatic safety backup
and rollback.

Usage:
    from platebook.backup import BackupService

    service = BackupService.from_settings(settings)

    # Export
    result = service.export_data(progress=print)

    # Import; live state is rolled back if replacement fails
    outcome = service.import_data(result.path)

    # Undo the last import
    service.restore_previous()
"""

from platebook.backup.codec import ArchiveCodec, ArchiveMetadata, DecodedArchive
from platebook.backup.errors import (
    ArchiveError,
    BackupError,
    BusyError,
    CorruptArchiveError,
    EncodingError,
    ExportError,
    ExportPhase,
    ImportDataError,
    ImportPhase,
    InvalidArchiveError,
    OperationCancelledError,
    SafetyBackupError,
)
from platebook.backup.progress import ProgressReporter
from platebook.backup.safety import SafetyBackupManager
from platebook.backup.service import (
    BackupService,
    CancelToken,
    ExportResult,
    ImportResult,
    RestoreResult,
    StorageUsage,
)

__all__ = [
    # Service
    "BackupService",
    "CancelToken",
    "ExportResult",
    "ImportResult",
    "RestoreResult",
    "StorageUsage",
    # Building blocks
    "ArchiveCodec",
    "ArchiveMetadata",
    "DecodedArchive",
    "ProgressReporter",
    "SafetyBackupManager",
    # Exceptions
    "BackupError",
    "ArchiveError",
    "EncodingError",
    "InvalidArchiveError",
    "CorruptArchiveError",
    "SafetyBackupError",
    "BusyError",
    "OperationCancelledError",
    "ExportError",
    "ExportPhase",
    "ImportDataError",
    "ImportPhase",
]
