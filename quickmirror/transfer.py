"""rsync transfer execution with retry and failure classification."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Union

from .exceptions import (
    SourceVanishedError,
    StaleFileListError,
    TransferRetriesExhaustedError,
    UnexpectedTransferError,
)
from .utils import DEFAULT_MAX_RETRIES, DEFAULT_RSYNC_TIMEOUT, RSYNC_TEMP_DIR_NAME

logger = logging.getLogger(__name__)

# rsync exit codes worth retrying:
#  5: Error starting client-server protocol
# 10: Error in socket I/O
# 23: Partial transfer due to error
# 30: Timeout in data send/receive
# 35: Timeout waiting for daemon connection
RETRYABLE_CODES = frozenset({5, 10, 23, 30, 35})
PARTIAL_TRANSFER_CODE = 23
VANISHED_CODE = 24

STALE_FILE_LIST_PATTERN = re.compile(
    r"^rsync: link_stat .* failed: No such file or directory \(2\)$", re.MULTILINE
)

BASE_RSYNC_OPTIONS = [
    "-aSH",
    "-f",
    f"R {RSYNC_TEMP_DIR_NAME}",
    "--stats",
    "--delay-updates",
    "--out-format=@ %i %10l  %n%L",
]


class ResultKind(str, Enum):
    """Classification of a single rsync invocation."""

    SUCCEEDED = "succeeded"
    """rsync completed without errors"""

    RETRYABLE = "retryable"
    """Transport/protocol failure; retrying may help"""

    STALE_FILE_LIST = "stale_file_list"
    """The file list references entries that no longer exist remotely"""

    VANISHED = "vanished"
    """Source files vanished while rsync was running"""

    UNEXPECTED = "unexpected"
    """A return code we do not know how to handle"""


@dataclass
class RsyncOutcome:
    """Raw result of running rsync once."""

    returncode: int
    """Process exit status"""

    stdout_path: Optional[Path] = None
    """File holding rsync's standard output"""

    stderr: str = ""
    """rsync's error output"""

    def stdout_lines(self) -> Iterator[str]:
        """Stream rsync's standard output line by line."""
        if self.stdout_path is None or not self.stdout_path.exists():
            return
        with open(self.stdout_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                yield line.rstrip("\n")


@dataclass
class Classification:
    """Typed interpretation of an RsyncOutcome."""

    kind: ResultKind
    returncode: int
    reason: str


@dataclass
class RetryEvent:
    """A retryable failure followed by a backoff sleep."""

    attempt: int
    returncode: int
    delay: float


@dataclass
class TransferStats:
    """Statistics parsed from rsync's --stats summary.

    Every field is None when rsync did not report it.
    """

    files_transferred: Optional[int] = None
    total_file_size: Optional[int] = None
    total_transferred_size: Optional[int] = None
    bytes_sent: Optional[int] = None
    bytes_received: Optional[int] = None
    file_list_generation_time: Optional[float] = None
    file_list_transfer_time: Optional[float] = None
    transfer_speed: Optional[float] = None
    speedup: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert stats to a dictionary for JSON serialization."""
        return {
            "files_transferred": self.files_transferred,
            "total_file_size": self.total_file_size,
            "total_transferred_size": self.total_transferred_size,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "file_list_generation_time": self.file_list_generation_time,
            "file_list_transfer_time": self.file_list_transfer_time,
            "transfer_speed": self.transfer_speed,
            "speedup": self.speedup,
        }


@dataclass
class TransferResult:
    """Result of a successful transfer, including retry history."""

    stats: TransferStats
    attempts: int
    retries: list[RetryEvent] = field(default_factory=list)


def _to_int(value: str) -> int:
    return int(value.replace(",", ""))


def _to_float(value: str) -> float:
    return float(value.replace(",", ""))


_STATS_PATTERNS: list[tuple[str, re.Pattern[str], Callable[[str], object]]] = [
    (
        "files_transferred",
        re.compile(r"^Number of regular files transferred: ([\d,]+)"),
        _to_int,
    ),
    ("total_file_size", re.compile(r"^Total file size: ([\d,]+) bytes"), _to_int),
    (
        "total_transferred_size",
        re.compile(r"^Total transferred file size: ([\d,]+) bytes"),
        _to_int,
    ),
    ("bytes_sent", re.compile(r"^Total bytes sent: ([\d,]+)"), _to_int),
    ("bytes_received", re.compile(r"^Total bytes received: ([\d,]+)"), _to_int),
    (
        "file_list_generation_time",
        re.compile(r"^File list generation time: ([\d.,]+) seconds"),
        _to_float,
    ),
    (
        "file_list_transfer_time",
        re.compile(r"^File list transfer time: ([\d.,]+) seconds"),
        _to_float,
    ),
    (
        "transfer_speed",
        re.compile(r"^sent .* bytes\s+received .* bytes\s+([\d.,]+) bytes/sec$"),
        _to_float,
    ),
    ("speedup", re.compile(r"^total size is .*\s+speedup is ([\d.,]+)"), _to_float),
]


def parse_rsync_stats(lines: Iterable[str]) -> TransferStats:
    """Parse rsync's --stats block.

    Only the first occurrence of each value is used.

    Args:
        lines: rsync standard output, line by line

    Returns:
        TransferStats with every value that could be found
    """
    stats = TransferStats()
    pending = list(_STATS_PATTERNS)
    for line in lines:
        if not pending:
            break
        for item in pending:
            name, pattern, convert = item
            match = pattern.match(line)
            if match:
                setattr(stats, name, convert(match.group(1)))
                pending.remove(item)
                break
    return stats


def classify_outcome(outcome: RsyncOutcome) -> Classification:
    """Map an rsync result to a typed classification.

    Args:
        outcome: Result of one rsync run

    Returns:
        Classification of the outcome
    """
    rc = outcome.returncode
    if rc == 0:
        return Classification(ResultKind.SUCCEEDED, rc, "rsync completed")
    if rc == VANISHED_CODE:
        return Classification(ResultKind.VANISHED, rc, "source files vanished")
    if rc == PARTIAL_TRANSFER_CODE and STALE_FILE_LIST_PATTERN.search(outcome.stderr):
        return Classification(
            ResultKind.STALE_FILE_LIST, rc, "the file list is outdated"
        )
    if rc in RETRYABLE_CODES:
        return Classification(ResultKind.RETRYABLE, rc, f"rsync returned {rc}")
    return Classification(
        ResultKind.UNEXPECTED, rc, f"rsync returned {rc}, which was not expected"
    )


def detect_rsync_options(rsync_path: str) -> list[str]:
    """Choose the default rsync options for the installed rsync.

    3.1.x supports --preallocate, except 3.1.3 which breaks when it is
    combined with --sparse.

    Args:
        rsync_path: Path to the rsync binary

    Returns:
        List of rsync options
    """
    options = list(BASE_RSYNC_OPTIONS)
    try:
        result = subprocess.run(
            [rsync_path, "--version"], capture_output=True, text=True, check=False
        )
    except OSError as e:
        logger.warning(f"Could not run {rsync_path} --version: {e}")
        return options

    first_line = result.stdout.splitlines()[0] if result.stdout else ""
    parts = first_line.split()
    version = parts[2] if len(parts) > 2 else ""
    if version.startswith("3.1") and version != "3.1.3":
        options.insert(3, "--preallocate")
    logger.debug(f"rsync version {version or 'unknown'}; options {options}")
    return options


class RsyncRunner:
    """Runs the rsync binary, capturing output to log files."""

    def __init__(
        self, rsync_path: str = "/usr/bin/rsync", log_dir: Optional[Path] = None
    ):
        """Initialize the runner.

        Args:
            rsync_path: Path to the rsync binary
            log_dir: Directory for rsync output logs (defaults to temp dir)
        """
        self.rsync_path = rsync_path
        self.log_dir = log_dir

    def run(self, args: list[str]) -> RsyncOutcome:
        """Run rsync once with the given arguments.

        Args:
            args: Arguments following the rsync binary

        Returns:
            RsyncOutcome holding the exit status and output
        """
        out_fd, out_name = tempfile.mkstemp(
            prefix="rsync-out-", suffix=".log", dir=self.log_dir
        )
        err_fd, err_name = tempfile.mkstemp(
            prefix="rsync-err-", suffix=".log", dir=self.log_dir
        )
        env = dict(os.environ, LANG="C", LC_ALL="C")
        cmd = [self.rsync_path, *args]
        logger.debug("Calling %s", " ".join(cmd))

        with os.fdopen(out_fd, "w") as out, os.fdopen(err_fd, "w") as err:
            try:
                completed = subprocess.run(cmd, stdout=out, stderr=err, env=env)
                returncode = completed.returncode
            except OSError as e:
                err.write(f"Could not execute {self.rsync_path}: {e}\n")
                returncode = 127

        stderr = Path(err_name).read_text(encoding="utf-8", errors="replace")
        return RsyncOutcome(
            returncode=returncode, stdout_path=Path(out_name), stderr=stderr
        )


class TransferExecutor:
    """Performs rsync transfers driven by an explicit file list."""

    def __init__(
        self,
        runner: RsyncRunner,
        options: Optional[list[str]] = None,
        timeout: int = DEFAULT_RSYNC_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        verbose: int = 0,
        work_dir: Optional[Path] = None,
    ):
        """Initialize the executor.

        Args:
            runner: Adapter that actually invokes rsync
            options: Base rsync options (detected from rsync when None)
            timeout: Per-call rsync I/O timeout in seconds
            max_retries: Maximum number of attempts for retryable failures
            verbose: Verbosity level (adds rsync verbosity options)
            work_dir: Directory where file lists are written
        """
        self.runner = runner
        self.options = (
            options if options is not None else detect_rsync_options(runner.rsync_path)
        )
        self.timeout = timeout
        self.max_retries = max_retries
        self.verbose = verbose
        self.work_dir = work_dir

    def _verbose_options(self) -> list[str]:
        opts: list[str] = []
        if self.verbose >= 7:
            opts.append("--progress")
        if self.verbose >= 5:
            opts.append("-v")
        if self.verbose >= 4:
            opts.append("-v")
        if self.verbose <= 3:
            opts.append("--no-motd")
        return opts

    def _write_file_list(self, files: Iterable[str], label: str) -> Path:
        fd, name = tempfile.mkstemp(
            prefix=f"{label}-", suffix=".list", dir=self.work_dir
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            for path in files:
                f.write(path)
                f.write("\n")
        return Path(name)

    def build_args(
        self, source: str, dest: str, files_from: Path, extra_options: list[str]
    ) -> list[str]:
        """Assemble the rsync argument list for one transfer."""
        return [
            f"--timeout={self.timeout}",
            *self.options,
            *self._verbose_options(),
            f"--files-from={files_from}",
            *extra_options,
            source,
            dest,
        ]

    def transfer(
        self,
        source: str,
        dest: Union[str, Path],
        files: Union[Path, Iterable[str]],
        extra_options: Optional[list[str]] = None,
        label: str = "transfer",
    ) -> TransferResult:
        """Run one rsync transfer, retrying transient failures.

        Retryable failures sleep 2**attempt seconds before the next attempt.

        Args:
            source: rsync source (e.g. "rsync://host/module/")
            dest: Local destination directory
            files: File list path, or an iterable of relative paths
            extra_options: Additional rsync options for this call
            label: Name used for log messages and file list naming

        Returns:
            TransferResult with parsed statistics

        Raises:
            StaleFileListError: If the file list references vanished paths
            SourceVanishedError: If rsync reports vanished source files
            TransferRetriesExhaustedError: If retryable failures persist
            UnexpectedTransferError: On any other rsync failure
        """
        if isinstance(files, Path):
            files_from = files
        else:
            files_from = self._write_file_list(files, label)

        args = self.build_args(source, str(dest), files_from, extra_options or [])
        retries: list[RetryEvent] = []
        attempt = 0

        while True:
            attempt += 1
            outcome = self.runner.run(args)
            classification = classify_outcome(outcome)

            if classification.kind == ResultKind.SUCCEEDED:
                logger.info(f"rsync {label} completed successfully")
                stats = parse_rsync_stats(outcome.stdout_lines())
                return TransferResult(stats=stats, attempts=attempt, retries=retries)

            if classification.kind == ResultKind.VANISHED:
                logger.error(f"rsync {label}: source files vanished")
                raise SourceVanishedError(
                    f"rsync says source files vanished during {label}", outcome
                )

            if classification.kind == ResultKind.STALE_FILE_LIST:
                logger.error(f"rsync {label}: looks like the file list is outdated")
                logger.error(outcome.stderr)
                raise StaleFileListError(
                    "Looks like the file list is outdated", outcome
                )

            if classification.kind == ResultKind.RETRYABLE:
                if attempt >= self.max_retries:
                    logger.error(f"rsync {label} from {source} failed")
                    logger.error(outcome.stderr)
                    raise TransferRetriesExhaustedError(
                        f"Could not sync from {source} after {attempt} attempt(s) "
                        f"(last return code {outcome.returncode})",
                        outcome,
                    )
                delay = float(2**attempt)
                retries.append(
                    RetryEvent(
                        attempt=attempt, returncode=outcome.returncode, delay=delay
                    )
                )
                logger.warning(
                    f"rsync returned {outcome.returncode} (retryable), "
                    f"sleeping for {delay:g}s"
                )
                time.sleep(delay)
                continue

            logger.error(classification.reason)
            logger.error(outcome.stderr)
            raise UnexpectedTransferError(classification.reason, outcome)
