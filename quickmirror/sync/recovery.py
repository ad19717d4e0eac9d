"""Recovery of partial transfers left behind by an aborted run.

rsync's --delay-updates stages files in a ".~tmp~" directory next to their
final location and only moves them into place at the end. When a run is
killed, those staged files stay behind. Each one is either promoted to its
final location (so the next transfer can finish it as a delta) or removed.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from ..utils import SMALL_FILE_THRESHOLD
from .scanner import LocalTree

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    """What recovery did for one module."""

    stale_dirs: list[str] = field(default_factory=list)
    """Temporary directories found"""

    restored: list[str] = field(default_factory=list)
    """Final paths of files moved up out of a temporary directory"""

    deleted: list[str] = field(default_factory=list)
    """Temporary files removed"""

    @property
    def found_stale(self) -> bool:
        return bool(self.stale_dirs)


class RecoveryManager:
    """Cleans up rsync temporary directories from an interrupted run."""

    def __init__(
        self,
        dest_root: Path,
        partial_dir_bug: bool = False,
        small_file_threshold: int = SMALL_FILE_THRESHOLD,
    ):
        """Initialize recovery manager.

        Args:
            dest_root: Destination root the tree paths are relative to
            partial_dir_bug: Work around an rsync defect that keeps small
                files (which only need a timestamp update) stuck in the
                temporary directory; such files are deleted, not promoted
            small_file_threshold: Size below which the workaround applies
        """
        self.dest_root = dest_root
        self.partial_dir_bug = partial_dir_bug
        self.small_file_threshold = small_file_threshold

    def recover(self, tree: LocalTree) -> RecoveryResult:
        """Promote or delete every file found in a temporary directory.

        The tree is updated in place so that it reflects the filesystem
        after recovery. The emptied temporary directories are left alone;
        they are not in the file list and get removed with the other
        stale directories.

        Args:
            tree: Local tree of one module

        Returns:
            RecoveryResult describing the changes
        """
        result = RecoveryResult(stale_dirs=tree.temp_dirs())
        if not result.stale_dirs:
            return result

        logger.warning(
            "Possibly aborted rsync run; cleaning up %d temporary dir(s)",
            len(result.stale_dirs),
        )
        for temp_dir in result.stale_dirs:
            parent = temp_dir.rsplit("/", 1)[0]
            for temp_path in tree.files_in(temp_dir):
                self._recover_file(tree, temp_path, parent, result)

        logger.info(
            "Recovery: %d file(s) restored, %d deleted",
            len(result.restored),
            len(result.deleted),
        )
        return result

    def _recover_file(
        self,
        tree: LocalTree,
        temp_path: str,
        parent: str,
        result: RecoveryResult,
    ) -> None:
        size = tree.files.pop(temp_path)
        name = temp_path.rsplit("/", 1)[-1]
        final_path = f"{parent}/{name}"
        abs_temp = self.dest_root / temp_path
        abs_final = self.dest_root / final_path

        if self.partial_dir_bug and size < self.small_file_threshold:
            logger.debug(f"Deleting small previous download: {temp_path}")
            abs_temp.unlink(missing_ok=True)
            result.deleted.append(temp_path)
        elif not os.path.lexists(abs_final):
            logger.debug(f"Saving previous download: {temp_path}")
            os.replace(abs_temp, abs_final)
            tree.files[final_path] = size
            result.restored.append(final_path)
        else:
            logger.debug(f"Deleting partial download: {temp_path}")
            abs_temp.unlink(missing_ok=True)
            result.deleted.append(temp_path)
