"""Tests for the file store accessor."""

import errno
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from platebook.storage.files import FileStore, FileStoreError


class TestWriteBytes(unittest.TestCase):
    """Tests for FileStore.write_bytes."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.files = FileStore()
        self.target = self.temp_dir / "SQLite" / "platebook.db"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_write_creates_parents(self):
        written = self.files.write_bytes(self.target, b"restaurants")

        self.assertEqual(written, 11)
        self.assertEqual(self.target.read_bytes(), b"restaurants")
        self.assertEqual(os.listdir(self.target.parent), ["platebook.db"])

    def test_temp_file_creation_failure(self):
        """Test a full disk while creating the temp file is a FileStoreError."""
        self.files.write_bytes(self.target, b"old")

        with patch(
            "platebook.storage.files.tempfile.mkstemp",
            side_effect=OSError(errno.ENOSPC, "No space left on device"),
        ):
            with self.assertRaises(FileStoreError) as cm:
                self.files.write_bytes(self.target, b"new")

        self.assertEqual(cm.exception.path, self.target)
        self.assertEqual(self.target.read_bytes(), b"old")

    def test_failed_write_removes_temp_file(self):
        """Test a failed rename leaves only the original file."""
        self.files.write_bytes(self.target, b"old")

        with patch(
            "platebook.storage.files.os.replace",
            side_effect=OSError(errno.EXDEV, "Invalid cross-device link"),
        ):
            with self.assertRaises(FileStoreError):
                self.files.write_bytes(self.target, b"new")

        self.assertEqual(os.listdir(self.target.parent), ["platebook.db"])
        self.assertEqual(self.target.read_bytes(), b"old")

    def test_cleanup_failure_keeps_original_error(self):
        """Test an undeletable temp file is logged and the write error raised."""
        with patch(
            "platebook.storage.files.os.replace",
            side_effect=OSError(errno.EXDEV, "Invalid cross-device link"),
        ):
            with patch(
                "platebook.storage.files.os.unlink",
                side_effect=OSError(errno.EACCES, "Permission denied"),
            ):
                with self.assertLogs("platebook.storage.files", level="WARNING"):
                    with self.assertRaises(FileStoreError) as cm:
                        self.files.write_bytes(self.target, b"new")

        self.assertIn("cross-device", str(cm.exception))


class TestDeleteAndList(unittest.TestCase):
    """Tests for delete, list_files and size_of."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.files = FileStore()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_delete_missing_path(self):
        self.files.delete(self.temp_dir / "nothing")

    def test_list_files_sorted_and_flat(self):
        images = self.temp_dir / "images"
        (images / "nested").mkdir(parents=True)
        (images / "b.jpg").write_bytes(b"b")
        (images / "a.jpg").write_bytes(b"aa")

        self.assertEqual([p.name for p in self.files.list_files(images)], ["a.jpg", "b.jpg"])
        self.assertEqual(self.files.size_of(images), 3)
        self.assertEqual(self.files.list_files(self.temp_dir / "missing"), [])


if __name__ == "__main__":
    unittest.main()
