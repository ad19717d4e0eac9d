"""Reconciliation of file lists against the local tree.

For each module the reconciler works out what must be fetched, what must
be deleted and which directory timestamps must be restored. It relies on
three cheap signals instead of a remote listing:

- entries newer than the last completed run,
- lines that changed between the previous and the current file list,
- differences between the file list and a single scan of the local tree.
"""

import hashlib
import logging
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ..config import MirrorConfig, Module
from ..exceptions import CorruptManifestError
from ..utils import file_digest, substitute_mdir
from .manifest import EntryKind, ManifestEntry, ManifestHandle, ManifestReader
from .recovery import RecoveryManager, RecoveryResult
from .scanner import DirectoryScanner, LocalTree

logger = logging.getLogger(__name__)


@dataclass
class TransferSet:
    """Everything derived for one module during one run.

    All paths are relative to the destination root, i.e. they start with
    the module directory.
    """

    module: Module
    first_mirror: bool = False
    """True when the module directory did not exist locally"""

    all_file_sizes: dict[str, int] = field(default_factory=dict)
    all_dirs: set[str] = field(default_factory=set)
    new_files: set[str] = field(default_factory=set)
    new_dirs: set[str] = field(default_factory=set)
    changed_paths: set[str] = field(default_factory=set)
    local_files: set[str] = field(default_factory=set)
    local_dirs: set[str] = field(default_factory=set)
    delete_files: set[str] = field(default_factory=set)
    delete_dirs: set[str] = field(default_factory=set)
    missing_files: set[str] = field(default_factory=set)
    missing_dirs: set[str] = field(default_factory=set)
    updated_files: set[str] = field(default_factory=set)
    checksum_failed: set[str] = field(default_factory=set)
    update_timestamps: set[str] = field(default_factory=set)
    recovered_files: set[str] = field(default_factory=set)
    refresh_paths: set[str] = field(default_factory=set)
    list_files: set[str] = field(default_factory=set)
    """The file list and auxiliary lists; always transferred, never deleted"""

    transfer_list: list[str] = field(default_factory=list)
    recovery: Optional[RecoveryResult] = None

    @property
    def all_files(self) -> set[str]:
        return set(self.all_file_sizes)

    def build_transfer_list(self) -> list[str]:
        """Union every transfer source into one sorted, de-duplicated list."""
        paths = (
            self.new_files
            | self.new_dirs
            | self.changed_paths
            | self.missing_files
            | self.missing_dirs
            | self.updated_files
            | self.checksum_failed
            | self.recovered_files
            | self.refresh_paths
            | self.list_files
        )
        self.transfer_list = sorted(paths)
        return self.transfer_list

    def counts(self) -> dict[str, int]:
        """Sizes of the derived sets, for logging and reporting."""
        return {
            "all_files": len(self.all_file_sizes),
            "all_dirs": len(self.all_dirs),
            "new_files": len(self.new_files),
            "new_dirs": len(self.new_dirs),
            "changed_paths": len(self.changed_paths),
            "local_files": len(self.local_files),
            "local_dirs": len(self.local_dirs),
            "delete_files": len(self.delete_files),
            "delete_dirs": len(self.delete_dirs),
            "missing_files": len(self.missing_files),
            "missing_dirs": len(self.missing_dirs),
            "updated_files": len(self.updated_files),
            "checksum_failed": len(self.checksum_failed),
            "update_timestamps": len(self.update_timestamps),
            "recovered_files": len(self.recovered_files),
            "total_transfer": len(self.transfer_list),
        }

    def summary_line(self) -> str:
        c = self.counts()
        return (
            f"Counts for {self.module.name}: "
            f"Svr:{c['all_files']}/{c['all_dirs']} "
            f"Loc:{c['local_files']}/{c['local_dirs']} "
            f"Diff:{c['changed_paths']} "
            f"New:{c['new_files']}/{c['new_dirs']} "
            f"Xtra:{c['delete_files']}/{c['delete_dirs']} "
            f"Miss:{c['missing_files']}/{c['missing_dirs']} "
            f"Size:{c['updated_files']} "
            f"Csum:{c['checksum_failed']} "
            f"Dtim:{c['update_timestamps']}"
        )


LINE_DIGEST_SIZE = 16


def _line_digest(line: str) -> bytes:
    data = line.encode("utf-8", errors="surrogateescape")
    return hashlib.blake2b(data, digest_size=LINE_DIGEST_SIZE).digest()


def changed_lines(
    old_lines: Iterable[str], new_lines: Iterable[str]
) -> Iterator[str]:
    """Lines of the new file list that are added or differ from the old one.

    Every line carries its path, so a new line is unchanged exactly when
    the identical line exists in the old list. Only a fixed-size digest of
    each old line is held in memory and the new list is streamed. Removed
    paths are not reported since there is nothing left to fetch for them.

    Args:
        old_lines: [Files] lines of the previous file list
        new_lines: [Files] lines of the current file list

    Yields:
        New-side lines whose path is new or whose line changed, in the
        order of the new list
    """
    seen = {_line_digest(line) for line in old_lines}
    for line in new_lines:
        if _line_digest(line) not in seen:
            yield line


def ancestor_dirs(paths: Iterable[str]) -> set[str]:
    """Every ancestor directory of every path (the paths themselves excluded)."""
    ancestors: set[str] = set()
    for path in paths:
        while "/" in path:
            path = path.rsplit("/", 1)[0]
            if path in ancestors:
                break
            ancestors.add(path)
    return ancestors


class Reconciler:
    """Derives a TransferSet for a module from its file lists and local tree."""

    def __init__(
        self,
        config: MirrorConfig,
        last_mirror_time: int,
        scanner: Optional[DirectoryScanner] = None,
        recovery: Optional[RecoveryManager] = None,
        update_all_dir_times: bool = False,
        refresh_pattern: Optional[str] = None,
    ):
        """Initialize reconciler.

        Args:
            config: Mirror configuration
            last_mirror_time: Epoch seconds of the last completed run
            scanner: Local tree scanner (defaults to one rooted at config.dest)
            recovery: Recovery manager, or None to skip partial-dir recovery
            update_all_dir_times: Restore the time of every directory
            refresh_pattern: Regex of remote paths to transfer again
        """
        self.config = config
        self.dest_root = config.dest
        self.last_mirror_time = last_mirror_time
        self.scanner = scanner or DirectoryScanner(config.dest)
        self.recovery = recovery
        self.update_all_dir_times = update_all_dir_times
        self.refresh_regex = re.compile(refresh_pattern) if refresh_pattern else None
        self.filter_regex = config.filter_regex

    def _module_path(self, module_dir: str, path: str) -> str:
        return posixpath.normpath(f"{module_dir}/{path}")

    def _wanted(self, entry: ManifestEntry) -> bool:
        return entry.is_visible(self.config.include_restricted)

    def _filtered(self, path: str) -> bool:
        return self.filter_regex is not None and bool(self.filter_regex.search(path))

    def reconcile(
        self, handle: ManifestHandle, remote_only: bool = False
    ) -> TransferSet:
        """Build the TransferSet for one module.

        Args:
            handle: The module's fetched file list
            remote_only: Only extract the remote lists (no local comparison)

        Returns:
            TransferSet for the module

        Raises:
            CorruptManifestError: If the file list has no end marker
        """
        module = handle.module
        reader = handle.reader
        if not reader.has_end_marker():
            raise CorruptManifestError(
                f"No end marker in {handle.path}; corrupted file list?"
            )

        module_root = self.dest_root / module.directory
        first_mirror = not module_root.is_dir()
        threshold = 0 if first_mirror else self.last_mirror_time

        ts = TransferSet(module=module, first_mirror=first_mirror)
        self._extract_remote(reader, ts, threshold)

        for name in [handle.name, *self._extra_names(module)]:
            ts.list_files.add(f"{module.directory}/{name}")

        if self.refresh_regex is not None:
            ts.refresh_paths = {
                p for p in ts.all_file_sizes if self.refresh_regex.search(p)
            }

        if first_mirror:
            logger.info(f"{module.name} is mirrored for the first time")
        elif not remote_only:
            ts.changed_paths = self._diff_file_lists(handle)
            tree = self.scanner.scan(module.directory)
            if self.recovery is not None:
                ts.recovery = self.recovery.recover(tree)
                ts.recovered_files = set(ts.recovery.restored) & ts.all_files
            self._compare_local(ts, tree, handle)

        ts.build_transfer_list()
        logger.info(ts.summary_line())
        return ts

    def _extra_names(self, module: Module) -> list[str]:
        return [substitute_mdir(t, module.directory) for t in self.config.extra_files]

    def _extract_remote(
        self, reader: ManifestReader, ts: TransferSet, threshold: int
    ) -> None:
        """Single pass over the [Files] section filling the all/new lists."""
        module_dir = ts.module.directory
        for entry in reader.iter_entries():
            if not self._wanted(entry):
                continue
            path = self._module_path(module_dir, entry.path)
            if self._filtered(path):
                continue
            is_new = entry.timestamp >= threshold
            if entry.kind == EntryKind.DIRECTORY:
                ts.all_dirs.add(path)
                if is_new:
                    ts.new_dirs.add(path)
            else:
                ts.all_file_sizes[path] = entry.size
                if is_new:
                    ts.new_files.add(path)

    def _diff_file_lists(self, handle: ManifestHandle) -> set[str]:
        """Paths whose file list line changed since the previous run."""
        old_reader = handle.old_reader
        old_lines = old_reader.iter_file_lines() if old_reader else iter(())
        new_lines = handle.reader.iter_file_lines()

        paths: set[str] = set()
        for line in changed_lines(old_lines, new_lines):
            entry = ManifestEntry.from_line(line)
            if entry is None or not self._wanted(entry):
                continue
            path = self._module_path(handle.module.directory, entry.path)
            if not self._filtered(path):
                paths.add(path)
        return paths

    def _compare_local(
        self, ts: TransferSet, tree: LocalTree, handle: ManifestHandle
    ) -> None:
        """Derive delete, missing, size and checksum lists from the local tree."""
        module_dir = ts.module.directory
        ts.local_files = set(tree.files)
        ts.local_dirs = set(tree.dirs)
        all_files = ts.all_files
        remote_dirs = ts.all_dirs - {module_dir}

        ts.delete_files = (ts.local_files - all_files) - ts.list_files
        ts.delete_dirs = ts.local_dirs - ts.all_dirs

        if self.update_all_dir_times:
            ts.update_timestamps = {module_dir} | ts.all_dirs
        else:
            ts.update_timestamps = ancestor_dirs(ts.delete_files | ts.delete_dirs)

        ts.missing_files = all_files - ts.local_files
        ts.missing_dirs = remote_dirs - ts.local_dirs

        ts.updated_files = {
            path
            for path, size in ts.all_file_sizes.items()
            if path in tree.files and tree.files[path] != size
        }

        ts.checksum_failed = self._verify_checksums(
            handle.reader, module_dir, ts.all_files
        )

    def _verify_checksums(
        self, reader: ManifestReader, module_dir: str, wanted: set[str]
    ) -> set[str]:
        """Local files whose content does not match the [Checksums] section.

        Only paths in wanted (visible and unfiltered) are checked. Files
        that do not exist locally are skipped; they are already counted as
        missing.
        """
        algorithm = reader.checksum_algorithm()
        failed: set[str] = set()
        for digest, rel in reader.iter_checksums():
            path = self._module_path(module_dir, rel)
            if path not in wanted:
                continue
            local = Path(self.dest_root, path)
            if not local.is_file():
                continue
            try:
                actual = file_digest(local, algorithm)
            except OSError as e:
                logger.warning(f"Cannot read {path} for checksum: {e}")
                continue
            if actual != digest.lower():
                logger.debug(f"Checksum failed: {path}")
                failed.add(path)
        return failed
