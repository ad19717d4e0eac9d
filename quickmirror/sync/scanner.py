"""Local tree enumeration for reconciliation."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from ..utils import RSYNC_TEMP_DIR_NAME

logger = logging.getLogger(__name__)


@dataclass
class LocalEntry:
    """Represents one entry of the local tree."""

    kind: str
    """Entry type: "f" (file), "d" (directory) or "l" (symlink)"""

    relative_path: str
    """Path relative to the destination root, using forward slashes"""

    size: int
    """Size in bytes (symlinks report the size of the link itself)"""


@dataclass
class LocalTree:
    """Files and directories found below one module directory."""

    files: dict[str, int] = field(default_factory=dict)
    """Relative path -> size for regular files and symlinks"""

    dirs: set[str] = field(default_factory=set)
    """Relative paths of directories (the module directory itself excluded)"""

    @classmethod
    def from_entries(cls, entries: list[LocalEntry]) -> "LocalTree":
        tree = cls()
        for entry in entries:
            if entry.kind == "d":
                tree.dirs.add(entry.relative_path)
            else:
                tree.files[entry.relative_path] = entry.size
        return tree

    def temp_dirs(self) -> list[str]:
        """Directories left behind by an interrupted rsync --delay-updates."""
        return sorted(
            d for d in self.dirs if d.rsplit("/", 1)[-1] == RSYNC_TEMP_DIR_NAME
        )

    def files_in(self, directory: str) -> list[str]:
        """Files directly inside the given directory."""
        prefix = directory + "/"
        return sorted(
            p for p in self.files if p.startswith(prefix) and "/" not in p[len(prefix):]
        )


class DirectoryScanner:
    """Walks a module directory once and records type, path and size.

    Examples:
        >>> scanner = DirectoryScanner(Path("/srv/mirror"))
        >>> tree = scanner.scan("epel")
        >>> len(tree.files)
        1234
    """

    def __init__(self, dest_root: Path):
        """Initialize directory scanner.

        Args:
            dest_root: Destination root; returned paths are relative to it
        """
        self.dest_root = dest_root

    def iter_entries(self, module_dir: str) -> Iterator[LocalEntry]:
        """Yield every entry below a module directory.

        Symbolic links are reported as links and never followed.

        Args:
            module_dir: Module directory relative to the destination root

        Yields:
            LocalEntry objects
        """
        pending = [module_dir]
        while pending:
            rel_dir = pending.pop()
            abs_dir = self.dest_root / rel_dir
            try:
                with os.scandir(abs_dir) as it:
                    entries = list(it)
            except PermissionError as e:
                logger.warning(f"Permission denied: {e}")
                continue
            except FileNotFoundError:
                continue

            for item in entries:
                relative_path = f"{rel_dir}/{item.name}"
                try:
                    if item.is_symlink():
                        kind = "l"
                    elif item.is_dir(follow_symlinks=False):
                        kind = "d"
                    elif item.is_file(follow_symlinks=False):
                        kind = "f"
                    else:
                        # Sockets, fifos and devices are never mirrored
                        continue
                    size = item.stat(follow_symlinks=False).st_size
                except OSError as e:
                    logger.warning(f"Cannot stat {relative_path}: {e}")
                    continue

                yield LocalEntry(kind=kind, relative_path=relative_path, size=size)
                if kind == "d":
                    pending.append(relative_path)

    def scan(self, module_dir: str) -> LocalTree:
        """Enumerate a module directory into a LocalTree."""
        return LocalTree.from_entries(list(self.iter_entries(module_dir)))
