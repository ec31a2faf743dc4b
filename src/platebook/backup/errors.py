"""
Error taxonomy of the backup and restore engine.

Archive errors come from the codec. ExportError and ImportDataError wrap a
lower-level failure with the phase in which it happened; the original error
is always chained as __cause__ and kept on the ``cause`` attribute.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from platebook.storage.models import SafetyBackupRecord


class BackupError(Exception):
    """Base class for backup and restore errors."""

    pass


class ArchiveError(BackupError):
    """Base class for archive codec errors."""

    pass


class EncodingError(ArchiveError):
    """An archive could not be produced."""

    pass


class InvalidArchiveError(ArchiveError):
    """The archive parsed but lacks mandatory members or has bad metadata."""

    pass


class CorruptArchiveError(ArchiveError):
    """The archive container or one of its members is damaged."""

    pass


class SafetyBackupError(BackupError):
    """A safety backup could not be created or restored."""

    pass


class BusyError(BackupError):
    """Another export or import is already running."""

    pass


class OperationCancelledError(BackupError):
    """The caller cancelled the operation before it became irreversible."""

    pass


class ExportPhase(str, Enum):
    """Step of an export at which a failure happened."""

    COLLECT = "collect"
    ARCHIVE = "archive"
    WRITE = "write"
    RECORD = "record"


class ImportPhase(str, Enum):
    """Step of an import at which a failure happened."""

    SAFETY_BACKUP_FAILED = "safetyBackupFailed"
    INVALID_ARCHIVE = "invalidArchive"
    EXTRACTION_FAILED = "extractionFailed"
    REPLACED_BUT_ROLLED_BACK = "replacedButRolledBack"
    ROLLBACK_FAILED = "rollbackFailed"


class ExportError(BackupError):
    """
    An export failed.

    The previous export record is left untouched, so exports are always
    safe to retry.
    """

    def __init__(
        self,
        phase: ExportPhase,
        message: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(f"Export failed during {phase.value}: {message}")
        self.phase = phase
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return True


class ImportDataError(BackupError):
    """
    An import failed.

    Attributes:
        phase: Where the import stopped.
        state_consistent: True when live state is known to equal what it was
            before the import (nothing touched, or rollback succeeded).
        safety_backup: The safety backup taken for this attempt, if any.
            When rollback failed this is where the user's data can be
            recovered by hand.
        cause: The underlying error.
    """

    def __init__(
        self,
        phase: ImportPhase,
        message: str,
        cause: BaseException | None = None,
        state_consistent: bool = True,
        safety_backup: SafetyBackupRecord | None = None,
    ) -> None:
        super().__init__(f"Import failed ({phase.value}): {message}")
        self.phase = phase
        self.cause = cause
        self.state_consistent = state_consistent
        self.safety_backup = safety_backup

    @property
    def retryable(self) -> bool:
        return self.state_consistent

    @property
    def requires_manual_recovery(self) -> bool:
        return self.phase is ImportPhase.ROLLBACK_FAILED
