"""
Local storage for Platebook.

Storage Structure:
    data/
        SQLite/
            platebook.db        # live app database
            settings.db         # bookkeeping (last export, last safety backup)
        images/
            {photo files}

Usage:
    from platebook.storage import FileStore, SettingsStore

    files = FileStore()
    files.write_bytes(path, data)

    store = SettingsStore(settings.settings_path)
    record = store.get_export_record()
"""

from platebook.storage.files import FileStore, FileStoreError, LivePaths, StorageError
from platebook.storage.models import ExportRecord, SafetyBackupRecord, SafetyStatus
from platebook.storage.settings_store import SettingsStore, SettingsStoreError

__all__ = [
    # Filesystem
    "FileStore",
    "LivePaths",
    # Settings
    "SettingsStore",
    # Data models
    "ExportRecord",
    "SafetyBackupRecord",
    "SafetyStatus",
    # Exceptions
    "StorageError",
    "FileStoreError",
    "SettingsStoreError",
]
