"""
Durable key/value settings for Platebook bookkeeping.

The app_settings table has one row per key with last-write-wins semantics.
Values are JSON documents. The table lives in a small SQLite file of its
own next to the live database, so recording an export or a safety backup
never changes the database snapshot that gets exported or replaced, and
the records survive an import.

A connection is opened per operation. Reads never create the file or the
table; a missing store simply has no values.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from platebook.storage.files import StorageError
from platebook.storage.models import ExportRecord, SafetyBackupRecord

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_NAME = "settings.db"

LAST_EXPORT_KEY = "last_export"
LAST_SAFETY_BACKUP_KEY = "last_safety_backup"

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS app_settings (
    key TEXT PRIMARY KEY NOT NULL,
    value TEXT,
    updated_at TEXT NOT NULL
);
"""

UPSERT_SQL = """
INSERT INTO app_settings (key, value, updated_at) VALUES (?, ?, ?)
ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
"""


class SettingsStoreError(StorageError):
    """Raised when the settings table cannot be read or written."""

    pass


class SettingsStore:
    """
    Key/value settings backed by the app_settings table.

    Example:
        store = SettingsStore(Path("data/SQLite/settings.db"))
        store.upsert("theme", {"dark": True})
        store.get("theme")  # {"dark": True}

    Attributes:
        db_path: Path to the SQLite file holding the settings table.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection inside a transaction.

        Yields:
            SQLite connection; committed on success, rolled back on error.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except (OSError, sqlite3.Error) as e:
            raise SettingsStoreError(f"Cannot open settings database {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise SettingsStoreError(f"Settings database error: {e}") from e
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the settings file and table if they do not exist."""
        with self._get_connection() as conn:
            conn.execute(CREATE_TABLE_SQL)

    def get(self, key: str) -> Any | None:
        """Return the decoded value stored under key, or None."""
        if not self.db_path.exists():
            return None
        with self._get_connection() as conn:
            table = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'app_settings'"
            ).fetchone()
            if table is None:
                return None
            row = conn.execute(
                "SELECT value FROM app_settings WHERE key = ?", (key,)
            ).fetchone()
        if row is None or row[0] is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed settings value for key {key!r}")
            return None

    def upsert(self, key: str, value: Any) -> None:
        """Insert or replace the value stored under key."""
        payload = json.dumps(value)
        with self._get_connection() as conn:
            conn.execute(CREATE_TABLE_SQL)
            conn.execute(UPSERT_SQL, (key, payload, datetime.now(UTC).isoformat()))
        logger.debug(f"Settings key {key!r} updated")

    def delete(self, key: str) -> None:
        if not self.db_path.exists():
            return
        with self._get_connection() as conn:
            conn.execute(CREATE_TABLE_SQL)
            conn.execute("DELETE FROM app_settings WHERE key = ?", (key,))

    def get_export_record(self) -> ExportRecord | None:
        data = self.get(LAST_EXPORT_KEY)
        if not isinstance(data, dict):
            return None
        try:
            return ExportRecord.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Stored export record is malformed")
            return None

    def save_export_record(self, record: ExportRecord) -> None:
        self.upsert(LAST_EXPORT_KEY, record.to_dict())

    def get_safety_backup_record(self) -> SafetyBackupRecord | None:
        data = self.get(LAST_SAFETY_BACKUP_KEY)
        if not isinstance(data, dict):
            return None
        try:
            return SafetyBackupRecord.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Stored safety backup record is malformed")
            return None

    def save_safety_backup_record(self, record: SafetyBackupRecord) -> None:
        self.upsert(LAST_SAFETY_BACKUP_KEY, record.to_dict())

    def restore_safety_backup_record(self, record: SafetyBackupRecord | None) -> None:
        """Put back an earlier record, or clear the key when there was none."""
        if record is None:
            self.delete(LAST_SAFETY_BACKUP_KEY)
        else:
            self.save_safety_backup_record(record)
