"""Local filesystem operations applied after a transfer."""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


@dataclass
class DeleteResult:
    """Outcome of a delete pass."""

    deleted_dirs: list[str] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    """Paths that could not be removed"""

    skipped: bool = False
    """True when deletion was only reported"""

    @property
    def total(self) -> int:
        return len(self.deleted_dirs) + len(self.deleted_files)


class SyncOperations:
    """Removes local content that is no longer present upstream."""

    def __init__(self, dest_root: Path):
        """Initialize sync operations.

        Args:
            dest_root: Destination root the relative paths are resolved against
        """
        self.dest_root = dest_root

    def delete_dirs(
        self, dirs: Iterable[str], result: DeleteResult, report_only: bool = False
    ) -> None:
        """Recursively remove directories that still exist.

        Directories are processed in sorted order; a directory already
        removed together with its parent is silently skipped.
        """
        for rel in sorted(dirs):
            target = self.dest_root / rel
            if report_only:
                logger.info(f"Would delete directory: {rel}")
                continue
            if not target.is_dir() or target.is_symlink():
                continue
            try:
                shutil.rmtree(target)
                result.deleted_dirs.append(rel)
                logger.debug(f"Deleted directory: {rel}")
            except OSError as e:
                logger.error(f"Failed to delete directory {rel}: {e}")
                result.failed.append(rel)

    def delete_files(
        self, files: Iterable[str], result: DeleteResult, report_only: bool = False
    ) -> None:
        """Remove files and symlinks (missing ones are ignored)."""
        for rel in sorted(files):
            target = self.dest_root / rel
            if report_only:
                logger.info(f"Would delete file: {rel}")
                continue
            try:
                target.unlink(missing_ok=True)
                result.deleted_files.append(rel)
                logger.debug(f"Deleted file: {rel}")
            except OSError as e:
                logger.error(f"Failed to delete file {rel}: {e}")
                result.failed.append(rel)

    def delete(
        self,
        dirs: Iterable[str],
        files: Iterable[str],
        report_only: bool = False,
    ) -> DeleteResult:
        """Delete directories first, then files.

        Args:
            dirs: Directories to remove recursively
            files: Files to remove
            report_only: Only log what would be deleted

        Returns:
            DeleteResult with what was removed
        """
        result = DeleteResult(skipped=report_only)
        dirs = list(dirs)
        files = list(files)
        if report_only:
            logger.info(
                f"Skipping deletion of {len(dirs)} dir(s) and {len(files)} file(s)"
            )
        self.delete_dirs(dirs, result, report_only)
        self.delete_files(files, result, report_only)
        if not report_only:
            logger.info(
                f"Deleted {len(result.deleted_dirs)} dir(s) and "
                f"{len(result.deleted_files)} file(s)"
            )
        return result
