"""
Archive codec for Platebook backups.

An archive is a ZIP file with three logical members:

    database.db         SQLite snapshot, stored byte for byte
    metadata.json       version, export timestamp and SHA-256 checksums
    images/<name>       one entry per stored photo

Archives can optionally be wrapped as base64 text for channels that only
carry text. decode() accepts both forms and tells them apart by the ZIP
signature.

Decoding is all-or-nothing: every member is read and verified before
anything is returned to the caller.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import json
import logging
import zipfile
import zlib
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Union

from platebook.backup.errors import (
    CorruptArchiveError,
    EncodingError,
    InvalidArchiveError,
)

logger = logging.getLogger(__name__)

DATABASE_MEMBER = "database.db"
METADATA_MEMBER = "metadata.json"
IMAGES_PREFIX = "images/"
FORMAT_VERSION = 1

ZIP_SIGNATURE = b"PK"

# Multiple of 3 so each encoded chunk is whole base64 quanta
TEXT_CHUNK_SIZE = 57 * 1024

ImageSource = Union[bytes, bytearray, memoryview, Path, Callable[[], bytes]]

# Errors zipfile/zlib raise on damaged members
_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError, NotImplementedError)


@dataclass
class ArchiveMetadata:
    """Contents of metadata.json."""

    version: str
    exported_at: datetime
    format: int = FORMAT_VERSION
    database_sha256: str = ""
    images: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "version": self.version,
            "exported_at": self.exported_at.isoformat(),
            "database_sha256": self.database_sha256,
            "images": dict(self.images),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchiveMetadata:
        """
        Create from dictionary.

        Raises:
            InvalidArchiveError: If a mandatory field is missing or malformed.
        """
        if not isinstance(data, dict):
            raise InvalidArchiveError("metadata.json must contain an object")
        try:
            version = data["version"]
            exported_at = datetime.fromisoformat(str(data["exported_at"]))
        except KeyError as e:
            raise InvalidArchiveError(f"metadata.json is missing field {e.args[0]!r}") from e
        except ValueError as e:
            raise InvalidArchiveError(f"metadata.json has an invalid exported_at: {e}") from e
        if exported_at.tzinfo is None:
            exported_at = exported_at.replace(tzinfo=UTC)

        images = data.get("images") or {}
        if not isinstance(images, dict):
            raise InvalidArchiveError("metadata.json images must be an object")
        try:
            archive_format = int(data.get("format", FORMAT_VERSION))
        except (TypeError, ValueError) as e:
            raise InvalidArchiveError(f"metadata.json has an invalid format: {e}") from e

        return cls(
            version=str(version),
            exported_at=exported_at,
            format=archive_format,
            database_sha256=str(data.get("database_sha256", "")),
            images={str(k): str(v) for k, v in images.items()},
        )


@dataclass
class DecodedArchive:
    """Fully read and verified archive contents."""

    db_bytes: bytes
    metadata: ArchiveMetadata
    image_files: list[tuple[str, bytes]]


def is_safe_member_name(name: str) -> bool:
    """True when name is a plain file name that cannot escape a directory."""
    return bool(name) and name not in (".", "..") and "/" not in name and "\\" not in name and "\x00" not in name


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _load_image(source: ImageSource) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    if isinstance(source, Path):
        return source.read_bytes()
    return source()


class ArchiveCodec:
    """
    Encode and decode Platebook backup archives.

    Example:
        codec = ArchiveCodec()
        data = codec.encode(db_bytes, ArchiveMetadata("1.2.0", now), [("a.jpg", jpg)])
        decoded = codec.decode(data)
    """

    def __init__(self, compression: int = zipfile.ZIP_DEFLATED) -> None:
        self.compression = compression

    def encode(
        self,
        db_bytes: bytes,
        metadata: ArchiveMetadata,
        image_files: Sequence[tuple[str, ImageSource]],
        text_safe: bool = False,
        on_image: Callable[[int, int], None] | None = None,
    ) -> bytes:
        """
        Build an archive.

        Args:
            db_bytes: Database snapshot.
            metadata: Version and timestamp; checksums are filled in here.
            image_files: (name, source) pairs. A source is the image bytes,
                a Path, or a callable returning the bytes.
            text_safe: Return the archive as base64 text.
            on_image: Called as on_image(index, total) after each image.

        Returns:
            Archive bytes (ZIP, or ASCII base64 when text_safe).

        Raises:
            EncodingError: If an image cannot be read or a name is unusable.
        """
        total = len(image_files)
        seen: set[str] = set()
        for name, _ in image_files:
            if not is_safe_member_name(name):
                raise EncodingError(f"Unusable image name: {name!r}")
            if name in seen:
                raise EncodingError(f"Duplicate image name: {name!r}")
            seen.add(name)

        # Fixed timestamps keep archives of unchanged state identical
        date_time = metadata.exported_at.astimezone(UTC).timetuple()[:6]
        if date_time[0] < 1980:
            date_time = (1980, 1, 1, 0, 0, 0)

        image_digests: dict[str, str] = {}
        buffer = io.BytesIO()
        try:
            with zipfile.ZipFile(buffer, "w", self.compression) as zf:
                zf.writestr(self._member(DATABASE_MEMBER, date_time), db_bytes)

                for index, (name, source) in enumerate(image_files):
                    try:
                        data = _load_image(source)
                    except Exception as e:
                        raise EncodingError(
                            f"Cannot read image {name!r} ({index + 1} of {total}): {e}"
                        ) from e
                    image_digests[name] = _sha256(data)
                    zf.writestr(self._member(IMAGES_PREFIX + name, date_time), data)
                    logger.debug(f"Archived image {index + 1}/{total}: {name}")
                    if on_image is not None:
                        on_image(index, total)

                final_metadata = replace(
                    metadata,
                    format=FORMAT_VERSION,
                    database_sha256=_sha256(db_bytes),
                    images=image_digests,
                )
                zf.writestr(
                    self._member(METADATA_MEMBER, date_time),
                    json.dumps(final_metadata.to_dict(), indent=2, sort_keys=True),
                )
        except EncodingError:
            raise
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            raise EncodingError(f"Cannot build archive: {e}") from e

        archive = buffer.getvalue()
        if text_safe:
            return self.to_text(archive)
        return archive

    def decode(self, archive_bytes: bytes) -> DecodedArchive:
        """
        Read and verify an archive.

        Raises:
            CorruptArchiveError: If the container or a member is damaged.
            InvalidArchiveError: If database.db or metadata.json is missing,
                metadata is malformed, or an image name is unsafe.
        """
        with self._open(archive_bytes) as zf:
            names = zf.namelist()
            self._require_members(names)

            metadata = self._read_metadata(zf)
            db_bytes = self._read_member(zf, DATABASE_MEMBER)
            if metadata.database_sha256 and _sha256(db_bytes) != metadata.database_sha256:
                raise CorruptArchiveError("Database checksum mismatch")

            image_files: list[tuple[str, bytes]] = []
            for member in names:
                if not member.startswith(IMAGES_PREFIX) or member.endswith("/"):
                    continue
                name = member[len(IMAGES_PREFIX):]
                if not is_safe_member_name(name):
                    raise InvalidArchiveError(f"Unsafe image entry: {member!r}")
                data = self._read_member(zf, member)
                expected = metadata.images.get(name)
                if expected and _sha256(data) != expected:
                    raise CorruptArchiveError(f"Checksum mismatch for image {name!r}")
                image_files.append((name, data))

            present = {name for name, _ in image_files}
            missing = sorted(set(metadata.images) - present)
            if missing:
                raise InvalidArchiveError(f"Images listed in metadata are missing: {', '.join(missing)}")

        logger.debug(f"Decoded archive: {len(db_bytes):,} byte database, {len(image_files)} images")
        return DecodedArchive(db_bytes=db_bytes, metadata=metadata, image_files=image_files)

    def read_metadata(self, archive_bytes: bytes) -> ArchiveMetadata:
        """Read only metadata.json, for previewing an archive before import."""
        with self._open(archive_bytes) as zf:
            self._require_members(zf.namelist())
            return self._read_metadata(zf)

    @staticmethod
    def to_text(archive: bytes) -> bytes:
        """Encode archive bytes as base64 text, one line per chunk."""
        lines = [
            base64.b64encode(archive[offset:offset + TEXT_CHUNK_SIZE])
            for offset in range(0, len(archive), TEXT_CHUNK_SIZE)
        ]
        return b"\n".join(lines) + b"\n"

    @staticmethod
    def from_text(text: bytes) -> bytes:
        """
        Decode base64 text produced by to_text (or any base64 of a ZIP).

        Raises:
            CorruptArchiveError: If the text is not valid base64.
        """
        compact = b"".join(text.split())
        decoded = bytearray()
        chunk = (TEXT_CHUNK_SIZE // 3) * 4
        try:
            for offset in range(0, len(compact), chunk):
                decoded += base64.b64decode(compact[offset:offset + chunk], validate=True)
        except (binascii.Error, ValueError) as e:
            raise CorruptArchiveError(f"Archive is neither a ZIP file nor base64 text: {e}") from e
        return bytes(decoded)

    def _member(self, name: str, date_time: tuple[int, ...]) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=date_time)
        info.compress_type = self.compression
        info.external_attr = 0o644 << 16
        return info

    def _open(self, archive_bytes: bytes) -> zipfile.ZipFile:
        if not archive_bytes:
            raise CorruptArchiveError("Archive is empty")
        data = bytes(archive_bytes)
        if not data.startswith(ZIP_SIGNATURE):
            data = self.from_text(data)
        try:
            return zipfile.ZipFile(io.BytesIO(data))
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError, OSError) as e:
            raise CorruptArchiveError(f"Cannot parse archive: {e}") from e

    @staticmethod
    def _require_members(names: list[str]) -> None:
        missing = [m for m in (DATABASE_MEMBER, METADATA_MEMBER) if m not in names]
        if missing:
            raise InvalidArchiveError(f"Archive is missing required members: {', '.join(missing)}")

    @staticmethod
    def _read_member(zf: zipfile.ZipFile, name: str) -> bytes:
        try:
            return zf.read(name)
        except _READ_ERRORS as e:
            raise CorruptArchiveError(f"Cannot read archive member {name!r}: {e}") from e

    def _read_metadata(self, zf: zipfile.ZipFile) -> ArchiveMetadata:
        raw = self._read_member(zf, METADATA_MEMBER)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidArchiveError(f"metadata.json is not valid JSON: {e}") from e
        return ArchiveMetadata.from_dict(data)
