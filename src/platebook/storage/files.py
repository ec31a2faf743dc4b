"""
Filesystem access for Platebook.

FileStore is the only place that touches the disk directly. Every failure is
re-raised as FileStoreError carrying the path involved, so callers can wrap
it with the phase of the operation they were running.

Design Decisions:
    - Writes are atomic (temp file in the target directory + rename)
    - Deletes are idempotent: deleting a missing path is not an error
    - Listing a missing directory returns an empty list
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class FileStoreError(StorageError):
    """Raised when a filesystem operation fails."""

    def __init__(self, message: str, path: Path | str | None = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


@dataclass(frozen=True)
class LivePaths:
    """
    Where the running app keeps its state.

    Attributes:
        database: The SQLite database file.
        images_dir: Directory holding one file per stored photo.
    """

    database: Path
    images_dir: Path

    def database_sidecars(self) -> list[Path]:
        """SQLite journal files that belong to the database file."""
        return [
            self.database.with_name(self.database.name + suffix)
            for suffix in ("-wal", "-shm", "-journal")
        ]


class FileStore:
    """
    Thin wrapper over the local filesystem.

    Example:
        files = FileStore()
        files.ensure_dir(images_dir)
        for path in files.list_files(images_dir):
            data = files.read_bytes(path)
    """

    def ensure_dir(self, path: Path) -> Path:
        """Create a directory (and parents) if it does not exist."""
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileStoreError(f"Cannot create directory {path}: {e}", path) from e
        return path

    def ensure_app_directories(self, database_path: Path, images_dir: Path) -> None:
        """
        Make sure the directories of the live state exist.

        Needed on first launch and after a reinstall wiped the app folders.
        """
        self.ensure_dir(database_path.parent)
        self.ensure_dir(images_dir)

    def exists(self, path: Path) -> bool:
        return path.exists()

    def read_bytes(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise FileStoreError(f"Cannot read {path}: {e}", path) from e

    def write_bytes(self, path: Path, data: bytes) -> int:
        """
        Write data to path atomically.

        Returns:
            Number of bytes written.
        """
        self.ensure_dir(path.parent)
        temp_path: str | None = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{path.name}.",
                suffix=".tmp",
                dir=str(path.parent),
            )
            with os.fdopen(temp_fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            if temp_path is not None:
                self._remove_temp_file(temp_path)
            raise FileStoreError(f"Cannot write {path}: {e}", path) from e
        return len(data)

    @staticmethod
    def _remove_temp_file(temp_path: str) -> None:
        try:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
        except OSError as e:
            logger.warning(f"Could not remove temporary file {temp_path}: {e}")

    def copy_file(self, source: Path, dest: Path) -> None:
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as e:
            raise FileStoreError(f"Cannot copy {source} to {dest}: {e}", source) from e

    def copy_tree(self, source: Path, dest: Path) -> None:
        """Copy every regular file of source into dest (flat)."""
        self.ensure_dir(dest)
        for path in self.list_files(source):
            self.copy_file(path, dest / path.name)

    def move(self, source: Path, dest: Path) -> None:
        """
        Move a file or directory to dest.

        A file at dest is replaced. A directory at dest is an error, since
        moving into it would nest source inside it.
        """
        if dest.is_dir() and not dest.is_symlink():
            raise FileStoreError(f"Cannot move {source} to {dest}: destination directory exists", dest)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(dest))
        except OSError as e:
            raise FileStoreError(f"Cannot move {source} to {dest}: {e}", source) from e

    def delete(self, path: Path) -> None:
        """Delete a file or a directory tree. Missing paths are ignored."""
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists() or path.is_symlink():
                path.unlink()
        except OSError as e:
            raise FileStoreError(f"Cannot delete {path}: {e}", path) from e

    def list_files(self, directory: Path) -> list[Path]:
        """
        List regular files directly inside directory, sorted by name.

        Subdirectories are skipped. A missing directory yields [].
        """
        if not directory.exists():
            return []
        try:
            return sorted(
                (entry for entry in directory.iterdir() if entry.is_file()),
                key=lambda p: p.name,
            )
        except OSError as e:
            raise FileStoreError(f"Cannot list {directory}: {e}", directory) from e

    def size_of(self, path: Path) -> int:
        """Size of a file, or the total size of all files under a directory."""
        try:
            if not path.exists():
                return 0
            if path.is_file():
                return path.stat().st_size
            return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
        except OSError as e:
            raise FileStoreError(f"Cannot stat {path}: {e}", path) from e
