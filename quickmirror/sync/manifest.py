"""File list (manifest) parsing and retrieval.

A file list is a line-oriented, tab-separated document split into
bracketed sections, each ending at a blank line:

    [Version]
    3

    [Files]
    1458066125	d	4096	.
    1458066125	f	1234	releases/README

    [Checksums SHA1]
    <digest>	releases/README

    [End]

File lists for large modules run to millions of lines, so everything here
streams the file instead of loading it.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from ..config import MirrorConfig, Module
from ..exceptions import (
    ManifestFetchError,
    TransferError,
    UnsupportedManifestVersionError,
)
from ..transfer import TransferExecutor, TransferResult
from ..utils import MAX_MANIFEST_VERSION, file_digest, format_size, substitute_mdir

logger = logging.getLogger(__name__)

END_MARKER = "[End]"

FILE_LIST_FETCH_OPTIONS = ["--no-dirs", "--relative", "--compress"]


class EntryKind(str, Enum):
    """Kind of a file list entry."""

    FILE = "f"
    DIRECTORY = "d"
    SYMLINK = "l"


@dataclass(frozen=True)
class ManifestEntry:
    """One line of the [Files] section."""

    timestamp: int
    """Last modification time (epoch seconds)"""

    type_code: str
    """Raw type field, e.g. f, d- or l*"""

    size: int
    """Size in bytes"""

    path: str
    """Path relative to the module directory"""

    @property
    def kind(self) -> Optional[EntryKind]:
        """Entry kind, or None for a type we do not recognise."""
        try:
            return EntryKind(self.type_code[:1])
        except ValueError:
            return None

    @property
    def restricted(self) -> bool:
        """True for pre-release entries (type suffixed with '-' or '*')."""
        return len(self.type_code) == 2 and self.type_code[1] in "-*"

    def is_visible(self, include_restricted: bool) -> bool:
        """Whether this entry should be mirrored under the given policy."""
        if self.kind is None:
            return False
        if len(self.type_code) > 1 and not self.restricted:
            return False
        return include_restricted or not self.restricted

    @classmethod
    def from_line(cls, line: str) -> Optional["ManifestEntry"]:
        """Parse a [Files] line.

        Args:
            line: Tab-separated line (timestamp, type, size, path)

        Returns:
            ManifestEntry, or None if the line is malformed
        """
        fields = line.split("\t", 3)
        if len(fields) != 4:
            return None
        try:
            return cls(
                timestamp=int(fields[0]),
                type_code=fields[1],
                size=int(fields[2]),
                path=fields[3],
            )
        except ValueError:
            return None


class _SectionState(Enum):
    BEFORE = 0
    IN = 1
    AFTER = 2


class ManifestReader:
    """Streaming reader for a file list.

    Examples:
        >>> reader = ManifestReader(Path("fullfiletimelist-epel"))
        >>> reader.version()
        3
        >>> for entry in reader.iter_entries():
        ...     print(entry.path)
    """

    def __init__(self, path: Path):
        self.path = path

    def _iter_section(self, header_prefix: str) -> Iterator[str]:
        """Yield the lines of the first section whose header starts with prefix."""
        state = _SectionState.BEFORE
        with open(self.path, encoding="utf-8", errors="surrogateescape") as f:
            for raw in f:
                line = raw.rstrip("\n")
                if state == _SectionState.BEFORE:
                    if line.startswith(f"[{header_prefix}"):
                        state = _SectionState.IN
                    continue
                if line == "":
                    state = _SectionState.AFTER
                    break
                yield line

    def _section_header(self, header_prefix: str) -> Optional[str]:
        with open(self.path, encoding="utf-8", errors="surrogateescape") as f:
            for raw in f:
                if raw.startswith(f"[{header_prefix}"):
                    return raw.strip()
        return None

    def version(self) -> Optional[int]:
        """Declared format version, or None if it cannot be parsed."""
        for line in self._iter_section("Version"):
            value = line.split("\t")[0].strip()
            try:
                return int(value)
            except ValueError:
                return None
        return None

    def iter_file_lines(self) -> Iterator[str]:
        """Yield the raw lines of the [Files] section."""
        return self._iter_section("Files")

    def iter_entries(self) -> Iterator[ManifestEntry]:
        """Yield parsed entries of the [Files] section."""
        for line in self.iter_file_lines():
            entry = ManifestEntry.from_line(line)
            if entry is None:
                logger.debug(f"Skipping malformed line in {self.path}: {line!r}")
                continue
            yield entry

    def checksum_algorithm(self) -> str:
        """hashlib name of the algorithm used in the [Checksums] section."""
        header = self._section_header("Checksums")
        if header:
            parts = header.strip("[]").split()
            if len(parts) > 1:
                return parts[1].lower()
        return "sha1"

    def iter_checksums(self) -> Iterator[tuple[str, str]]:
        """Yield (digest, path) pairs from the [Checksums] section."""
        for line in self._iter_section("Checksums"):
            fields = line.split("\t", 1)
            if len(fields) == 2:
                yield fields[0], fields[1]

    def has_end_marker(self) -> bool:
        """Whether the file list is complete (ends with the [End] marker)."""
        with open(self.path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            f.seek(max(0, size - 4096))
            tail = f.read().decode("utf-8", errors="replace").splitlines()
        return END_MARKER in tail[-2:]


@dataclass
class ManifestHandle:
    """A module's freshly fetched file list and its predecessor."""

    module: Module
    name: str
    """File list file name (e.g. "fullfiletimelist-epel")"""

    path: Path
    """Fetched file list in the scratch directory"""

    old_path: Path
    """Copy of the previous file list (may not exist)"""

    previous_checksum: Optional[str] = None
    """SHA1 of the previous local file list, if there was one"""

    @property
    def reader(self) -> ManifestReader:
        return ManifestReader(self.path)

    @property
    def old_reader(self) -> Optional[ManifestReader]:
        if self.old_path.exists():
            return ManifestReader(self.old_path)
        return None

    def current_checksum(self) -> str:
        return file_digest(self.path, "sha1")

    def is_unchanged(self) -> bool:
        """True when the fetched file list is identical to the previous one."""
        if self.previous_checksum is None:
            return False
        return self.current_checksum() == self.previous_checksum


class ManifestStore:
    """Fetches and validates the file lists for every configured module."""

    def __init__(
        self,
        config: MirrorConfig,
        executor: TransferExecutor,
        scratch_dir: Path,
    ):
        """Initialize the store.

        Args:
            config: Mirror configuration
            executor: Transfer executor used for the fetch
            scratch_dir: Per-run scratch directory
        """
        self.config = config
        self.executor = executor
        self.scratch_dir = scratch_dir

    def manifest_name(self, module: Module) -> str:
        return substitute_mdir(self.config.filelist, module.directory)

    def extra_names(self, module: Module) -> list[str]:
        return [substitute_mdir(t, module.directory) for t in self.config.extra_files]

    def prepare(self) -> dict[str, ManifestHandle]:
        """Preserve each module's previous file list in the scratch directory.

        The previous list is copied into place so rsync only transfers the
        delta, and hard-linked to "<name>.old" so it survives the fetch.

        Returns:
            Dictionary mapping module name to ManifestHandle
        """
        handles: dict[str, ManifestHandle] = {}
        for module in self.config.modules:
            name = self.manifest_name(module)
            module_scratch = self.scratch_dir / module.directory
            module_scratch.mkdir(parents=True, exist_ok=True)
            handle = ManifestHandle(
                module=module,
                name=name,
                path=module_scratch / name,
                old_path=module_scratch / f"{name}.old",
            )

            local = self.config.dest / module.directory / name
            if local.is_file():
                shutil.copy2(local, handle.path)
                os.link(handle.path, handle.old_path)
                handle.previous_checksum = file_digest(local, "sha1")
                logger.debug(f"Preserved previous file list for {module.name}")
            handles[module.name] = handle
        return handles

    def fetch_list(self, handles: dict[str, ManifestHandle]) -> list[str]:
        """Paths (relative to the master module) fetched in one batch."""
        paths: list[str] = []
        for handle in handles.values():
            paths.append(f"{handle.module.directory}/{handle.name}")
            if self.config.fetch_extra_files:
                for extra in self.extra_names(handle.module):
                    paths.append(f"{handle.module.directory}/{extra}")
        return paths

    def fetch(self, handles: dict[str, ManifestHandle]) -> TransferResult:
        """Download every module's file list in a single rsync call.

        Raises:
            ManifestFetchError: If the transfer fails for any reason
        """
        logger.info("Remote file list download start")
        try:
            result = self.executor.transfer(
                self.config.source,
                self.scratch_dir,
                self.fetch_list(handles),
                extra_options=list(FILE_LIST_FETCH_OPTIONS),
                label="filelist",
            )
        except TransferError as e:
            logger.error("Aborting due to rsync failure while retrieving file lists")
            raise ManifestFetchError(f"Could not retrieve file lists: {e}") from e

        stats = result.stats
        logger.info(
            f"File list download: {format_size(stats.bytes_received)} received, "
            f"{format_size(stats.transfer_speed)}/s"
        )
        return result

    def validate(self, handles: dict[str, ManifestHandle]) -> None:
        """Check that every fetched file list has a version we can process.

        Raises:
            ManifestFetchError: If a file list is missing after the fetch
            UnsupportedManifestVersionError: If a version is too new or
                unparseable
        """
        for handle in handles.values():
            if not handle.path.is_file():
                raise ManifestFetchError(f'Cannot check file list "{handle.path}"')
            version = handle.reader.version()
            if version is None or version > MAX_MANIFEST_VERSION:
                raise UnsupportedManifestVersionError(
                    str(handle.path), version, MAX_MANIFEST_VERSION
                )
