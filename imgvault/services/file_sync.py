"""Copy the uploads root into a backup archive and back out of an extraction."""

import logging
import shutil
from pathlib import Path

from imgvault.services.archive import UPLOADS_DIR, ArchiveWriter
from imgvault.services.errors import FileSyncError

logger = logging.getLogger(__name__)


def add_uploads_to_archive(writer: ArchiveWriter, upload_root: Path) -> int:
    """Write every regular file under upload_root as uploads/<relative path>.

    Directories are implied by file paths and symlinks are not followed.
    Returns the number of files written.
    """
    upload_root = Path(upload_root)
    if not upload_root.is_dir():
        logger.warning(f"Uploads dir does not exist, archiving database only: {upload_root}")
        return 0

    count = 0
    try:
        for fp in sorted(upload_root.rglob("*")):
            if fp.is_symlink() or not fp.is_file():
                continue
            rel = fp.relative_to(upload_root).as_posix()
            writer.write_file(f"{UPLOADS_DIR}/{rel}", fp)
            count += 1
    except OSError as e:
        raise FileSyncError(f"Backup files failed: {e}")

    logger.info(f"Archived {count} upload files from {upload_root}")
    return count


def restore_uploads(extract_dir: Path, upload_root: Path) -> int:
    """Replace upload_root with the uploads/ tree of an extracted archive.

    A database-only archive leaves the live uploads untouched. Otherwise the
    live root is removed and recreated first: files added since the backup
    was taken are discarded. Returns the number of files restored.
    """
    source = Path(extract_dir) / UPLOADS_DIR
    if not source.is_dir():
        logger.info("Archive has no uploads, file restore skipped")
        return 0

    upload_root = Path(upload_root)
    count = 0
    try:
        if upload_root.exists():
            shutil.rmtree(upload_root)
        upload_root.mkdir(parents=True, exist_ok=True)

        for fp in sorted(source.rglob("*")):
            if not fp.is_file():
                continue
            target = upload_root / fp.relative_to(source)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(fp, target)
            count += 1
    except OSError as e:
        raise FileSyncError(f"Restore files failed: {e}")

    logger.info(f"Restored {count} upload files into {upload_root}")
    return count
