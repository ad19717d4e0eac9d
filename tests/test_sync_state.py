"""Tests for run state persistence and locking."""

import json
import os

import pytest

from quickmirror.exceptions import LockContentionError, StateFileError
from quickmirror.sync.state import RunLock, RunState, RunStateManager, write_status


class TestRunState:
    """Tests for parsing the time file."""

    def test_from_text(self):
        """Test parsing a LASTTIME line."""
        assert RunState.from_text("LASTTIME=1458066125\n").last_mirror_time == (
            1458066125
        )

    def test_ignores_other_lines(self):
        """Test that unrelated lines are skipped."""
        state = RunState.from_text("# comment\nFOO=1\nLASTTIME=42\n")
        assert state.last_mirror_time == 42

    def test_invalid_value(self):
        """Test that a garbage value counts as no previous run."""
        assert RunState.from_text("LASTTIME=soon\n").last_mirror_time == 0

    def test_to_line(self):
        """Test rendering the time file line."""
        assert RunState(7).to_line() == "LASTTIME=7\n"


class TestRunStateManager:
    """Tests for loading and saving the time file."""

    def test_load_missing(self, tmp_path):
        """Test that a missing time file means no previous run."""
        manager = RunStateManager(tmp_path / "timefile")
        assert manager.load().last_mirror_time == 0

    def test_save_and_load(self, tmp_path):
        """Test a saved time is read back."""
        manager = RunStateManager(tmp_path / "timefile")
        manager.save(1000)
        assert manager.load().last_mirror_time == 1000
        assert (tmp_path / "timefile").read_text() == "LASTTIME=1000\n"

    def test_save_keeps_previous_copy(self, tmp_path):
        """Test that the previous time file is kept as .prev."""
        timefile = tmp_path / "timefile"
        timefile.write_text("LASTTIME=1000\n")
        manager = RunStateManager(timefile)

        manager.save(2000)

        assert (tmp_path / "timefile.prev").read_text() == "LASTTIME=1000\n"
        assert timefile.read_text() == "LASTTIME=2000\n"

    def test_save_rewrites_in_place(self, tmp_path):
        """Test the time file keeps its inode so the lock stays valid."""
        timefile = tmp_path / "timefile"
        timefile.write_text("LASTTIME=1000\n")
        inode = os.stat(timefile).st_ino

        RunStateManager(timefile).save(2000)

        assert os.stat(timefile).st_ino == inode

    def test_never_moves_backwards(self, tmp_path):
        """Test that an older time never replaces a newer one."""
        timefile = tmp_path / "timefile"
        timefile.write_text("LASTTIME=5000\n")

        state = RunStateManager(timefile).save(4000)

        assert state.last_mirror_time == 5000
        assert timefile.read_text() == "LASTTIME=5000\n"

    def test_save_failure(self, tmp_path):
        """Test that an unwritable time file raises StateFileError."""
        manager = RunStateManager(tmp_path / "missing-dir" / "timefile")
        with pytest.raises(StateFileError):
            manager.save(1000)


class TestRunLock:
    """Tests for the time file lock."""

    def test_acquire_and_release(self, tmp_path):
        """Test acquiring a free lock."""
        lock = RunLock(tmp_path / "timefile")
        with lock:
            assert lock.locked
        assert not lock.locked

    def test_contention(self, tmp_path):
        """Test that a second holder is refused."""
        path = tmp_path / "timefile"
        with RunLock(path):
            with pytest.raises(LockContentionError):
                RunLock(path).acquire()

    def test_reacquire_after_release(self, tmp_path):
        """Test the lock is free again after release."""
        path = tmp_path / "timefile"
        first = RunLock(path)
        first.acquire()
        first.release()

        second = RunLock(path)
        second.acquire()
        assert second.locked
        second.release()

    def test_lock_does_not_truncate(self, tmp_path):
        """Test that locking leaves the stored time intact."""
        path = tmp_path / "timefile"
        path.write_text("LASTTIME=1000\n")
        with RunLock(path):
            pass
        assert path.read_text() == "LASTTIME=1000\n"


class TestWriteStatus:
    """Tests for the status artifact."""

    def test_write_status(self, tmp_path):
        """Test the status is written as JSON."""
        path = tmp_path / "status.json"
        write_status(path, {"outcome": "success", "exit_code": 0})
        assert json.loads(path.read_text()) == {"outcome": "success", "exit_code": 0}

    def test_write_failure_is_not_fatal(self, tmp_path):
        """Test that an unwritable status path is only logged."""
        write_status(tmp_path / "missing" / "status.json", {"outcome": "failed"})
