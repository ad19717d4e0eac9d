"""Run state persistence and locking.

The time file holds a single ``LASTTIME=<epoch>`` line recording the start
of the last completed run. The same file doubles as the run lock: a run
holds an exclusive ``flock`` on it for its whole lifetime, so state is
rewritten in place to keep the lock on the same inode.
"""

import fcntl
import json
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..exceptions import LockContentionError, StateFileError

logger = logging.getLogger(__name__)

LASTTIME_KEY = "LASTTIME"


@dataclass
class RunState:
    """Persisted state of a mirror target."""

    last_mirror_time: int = 0
    """Start time (epoch seconds) of the last completed run; 0 if none"""

    def to_line(self) -> str:
        return f"{LASTTIME_KEY}={self.last_mirror_time}\n"

    @classmethod
    def from_text(cls, text: str) -> "RunState":
        """Parse the time file contents.

        Unknown lines are ignored; an unparseable value counts as no
        previous run.
        """
        for line in text.splitlines():
            key, sep, value = line.strip().partition("=")
            if sep and key == LASTTIME_KEY:
                try:
                    return cls(last_mirror_time=int(value.strip()))
                except ValueError:
                    logger.warning(f"Ignoring invalid {LASTTIME_KEY} value: {value}")
                    return cls()
        return cls()


class RunStateManager:
    """Loads and saves the RunState of one target."""

    def __init__(self, timefile: Path):
        """Initialize state manager.

        Args:
            timefile: Path of the time file
        """
        self.timefile = timefile

    @property
    def backup_file(self) -> Path:
        return self.timefile.with_name(self.timefile.name + ".prev")

    def load(self) -> RunState:
        """Read the time file; a missing or empty file means no previous run."""
        if not self.timefile.exists():
            logger.debug(f"No time file found at {self.timefile}")
            return RunState()
        try:
            text = self.timefile.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read time file {self.timefile}: {e}")
            return RunState()
        state = RunState.from_text(text)
        logger.debug(f"Loaded {LASTTIME_KEY}={state.last_mirror_time}")
        return state

    def save(self, last_mirror_time: int) -> RunState:
        """Record a completed run.

        The current file is copied to ``<timefile>.prev`` and then
        rewritten in place. A value lower than the stored one is never
        written.

        Args:
            last_mirror_time: Start time of the completed run

        Returns:
            The RunState now stored

        Raises:
            StateFileError: If the time file cannot be written
        """
        current = self.load()
        if last_mirror_time < current.last_mirror_time:
            logger.warning(
                f"Not moving {LASTTIME_KEY} backwards "
                f"({current.last_mirror_time} -> {last_mirror_time})"
            )
            return current

        state = RunState(last_mirror_time=last_mirror_time)
        logger.info(f"Saving mirror time to {self.timefile}")
        try:
            if self.timefile.exists():
                shutil.copy2(self.timefile, self.backup_file)
            with open(self.timefile, "a+", encoding="utf-8") as f:
                f.seek(0)
                f.truncate()
                f.write(state.to_line())
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StateFileError(
                f"Problem saving timestamp file {self.timefile}: {e}"
            ) from e
        return state


class RunLock:
    """Exclusive, non-blocking lock on the time file.

    Examples:
        >>> with RunLock(Path("/var/lib/qm/time")):
        ...     run_mirror()
    """

    def __init__(self, path: Path):
        self.path = path
        self._fd: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            LockContentionError: If another process holds the lock
            StateFileError: If the time file cannot be opened
        """
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        except OSError as e:
            raise StateFileError(f"Cannot open time file {self.path}: {e}") from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            raise LockContentionError(f"Could not acquire lock on {self.path}") from e
        self._fd = fd
        logger.debug(f"Acquired lock on {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released lock on {self.path}")

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def write_status(path: Path, status: dict[str, Any]) -> None:
    """Write the JSON status artifact of a run.

    Failure to write it is logged, never fatal.
    """
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(status, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp, path)
        logger.debug(f"Wrote status to {path}")
    except OSError as e:
        logger.warning(f"Failed to write status file {path}: {e}")
