"""
Archive codec for backup archives.

Layout of a backup archive (a plain zip file):

    database_<dialect>.sql     exactly one, dialect is "mysql" or "sqlite"
    uploads/<relative path>    optional mirror of the uploads root

Extraction validates every entry name before anything is written, so a
crafted archive can never place a file outside the scratch directory.
"""

import logging
import posixpath
import re
import shutil
import zipfile
from pathlib import Path
from typing import IO, List, Optional, Tuple

from imgvault.config import settings
from imgvault.services.errors import (
    ArchiveSecurityError,
    InvalidArchiveError,
    NoValidDatabaseBackupError,
)

logger = logging.getLogger(__name__)

UPLOADS_DIR = "uploads"
DATABASE_DIALECTS = ("mysql", "sqlite")

# Entry flag bit 11: file name is encoded as UTF-8
_UTF8_FLAG = 0x800
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:")


def database_entry_name(dialect: str) -> str:
    return f"database_{dialect}.sql"


class ArchiveWriter:
    """Write side of the codec. Use as a context manager."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._zf: Optional[zipfile.ZipFile] = None

    def __enter__(self) -> "ArchiveWriter":
        self._zf = zipfile.ZipFile(self.path, "w", zipfile.ZIP_DEFLATED)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._zf is not None:
            self._zf.close()
            self._zf = None

    @property
    def zipfile(self) -> zipfile.ZipFile:
        if self._zf is None:
            raise RuntimeError("ArchiveWriter is not open")
        return self._zf

    def open_database_entry(self, dialect: str) -> IO[bytes]:
        """Open the database export entry for streaming writes."""
        return self.zipfile.open(database_entry_name(dialect), "w", force_zip64=True)

    def write_file(self, arcname: str, source: Path) -> None:
        """Add a file from disk. arcname always uses '/' separators."""
        self.zipfile.write(source, arcname)


def decode_entry_name(info: zipfile.ZipInfo, legacy_encoding: Optional[str] = None) -> str:
    """Return the entry name, honouring names stored in a legacy encoding.

    zipfile decodes names without the UTF-8 flag as CP437. Those bytes are
    re-decoded with the configured legacy encoding (GBK by default); when
    that fails the CP437 name is kept.
    """
    if info.flag_bits & _UTF8_FLAG:
        return info.orig_filename
    encoding = legacy_encoding or settings.archive_legacy_encoding
    try:
        raw = info.orig_filename.encode("cp437")
    except UnicodeEncodeError:
        return info.orig_filename
    try:
        return raw.decode(encoding)
    except (UnicodeDecodeError, LookupError):
        return info.orig_filename


def resolve_entry_path(dest_root: Path, name: str) -> Path:
    """Validate an entry name and return its absolute target under dest_root.

    dest_root must already be resolved. Raises ArchiveSecurityError if the
    name is absolute, contains a parent directory segment, or resolves to
    anything but a path strictly inside dest_root.
    """
    if "\x00" in name:
        raise ArchiveSecurityError(name, "contains a NUL byte")
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or _WINDOWS_DRIVE.match(normalized):
        raise ArchiveSecurityError(name, "is an absolute path")

    cleaned = posixpath.normpath(normalized)
    if ".." in cleaned.split("/"):
        raise ArchiveSecurityError(name, "contains a parent directory segment")

    target = (dest_root / cleaned).resolve()
    if target == dest_root or dest_root not in target.parents:
        raise ArchiveSecurityError(name, f"resolves outside of {dest_root}")
    return target


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Safely unpack archive_path into dest_dir and return dest_dir.

    All entries are validated first; a single unsafe entry aborts the whole
    extraction before any file is written. The caller owns dest_dir and is
    expected to discard it on failure.
    """
    dest_root = Path(dest_dir).resolve()
    dest_root.mkdir(parents=True, exist_ok=True)

    try:
        zf = zipfile.ZipFile(archive_path, "r")
    except zipfile.BadZipFile as e:
        raise InvalidArchiveError(f"Invalid zip file: {e}")
    except OSError as e:
        raise InvalidArchiveError(f"Cannot open archive {archive_path}: {e}")

    with zf:
        plan: List[Tuple[zipfile.ZipInfo, Path]] = []
        for info in zf.infolist():
            name = decode_entry_name(info)
            target = resolve_entry_path(dest_root, name)
            plan.append((info, target))

        for info, target in plan:
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                with zf.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
                raise InvalidArchiveError(f"Corrupt archive entry '{info.filename}': {e}")

    logger.info(f"Extracted {len(plan)} entries from {archive_path} to {dest_root}")
    return dest_root


def detect_dialect(extract_dir: Path) -> str:
    """Return the dialect of the single database export in an extracted archive."""
    found = [
        dialect for dialect in DATABASE_DIALECTS
        if (Path(extract_dir) / database_entry_name(dialect)).is_file()
    ]
    if not found:
        raise NoValidDatabaseBackupError()
    if len(found) > 1:
        raise NoValidDatabaseBackupError(
            "Archive contains more than one database export: "
            + ", ".join(database_entry_name(d) for d in found)
        )
    return found[0]
