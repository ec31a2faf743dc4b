"""
Bookkeeping records persisted in the settings store.

Schema Design Decisions:
    - Timestamps are stored as ISO format strings in UTC
    - Records are stored as JSON text in a single key/value row
    - Paths are stored as absolute strings; they describe this device only
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


def _parse_timestamp(value: Any) -> datetime:
    """Parse an ISO timestamp, assuming UTC when no offset is present."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class ExportRecord:
    """
    Record of the last successful export.

    Attributes:
        date: When the export finished (UTC).
        path: Location of the archive file that was written.
        size_bytes: Size of the archive file on disk.
        version: App version that produced the archive.

    Settings key: last_export
    """

    date: datetime
    path: str
    size_bytes: int
    version: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "date": self.date.isoformat(),
            "path": self.path,
            "size_bytes": self.size_bytes,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExportRecord:
        """Create from dictionary."""
        return cls(
            date=_parse_timestamp(data["date"]),
            path=str(data.get("path", "")),
            size_bytes=int(data.get("size_bytes", 0) or 0),
            version=str(data.get("version", "")),
        )


class SafetyStatus(str, Enum):
    """Lifecycle of a safety backup."""

    # Taken; the import that needed it has not finished
    PENDING = "pending"
    IMPORTED = "imported"
    ROLLED_BACK = "rolled_back"
    RESTORED = "restored"


@dataclass
class SafetyBackupRecord:
    """
    Pointer to a pre-import copy of the live database and images.

    Attributes:
        date: When the safety backup was taken (UTC).
        location: Directory holding the copy.
        status: Where the import that took it ended up. A PENDING record
            found at start-up means that import was interrupted.

    Settings key: last_safety_backup
    """

    date: datetime
    location: str
    status: SafetyStatus = SafetyStatus.IMPORTED

    @property
    def path(self) -> Path:
        return Path(self.location)

    def age_seconds(self, now: datetime | None = None) -> float:
        """Seconds elapsed since the backup was taken."""
        now = now or datetime.now(UTC)
        return (now - self.date).total_seconds()

    def with_status(self, status: SafetyStatus) -> SafetyBackupRecord:
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "date": self.date.isoformat(),
            "location": self.location,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SafetyBackupRecord:
        """Create from dictionary."""
        return cls(
            date=_parse_timestamp(data["date"]),
            location=str(data["location"]),
            status=SafetyStatus(data.get("status", SafetyStatus.IMPORTED.value)),
        )
