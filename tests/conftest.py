"""Shared fixtures for quickmirror tests."""

import shutil
from pathlib import Path
from typing import Optional

import pytest

from quickmirror.config import MirrorConfig, Module
from quickmirror.transfer import RsyncOutcome

EPEL = Module(
    name="fedora-epel",
    directory="epel",
    registry_name="fedora epel",
    registry_dir="epel",
)


def render_manifest(
    entries: list[tuple[int, str, int, str]],
    checksums: Optional[list[tuple[str, str]]] = None,
    version: str = "3",
    end: bool = True,
    checksum_header: str = "Checksums SHA1",
) -> str:
    """Render a file list document."""
    lines = ["[Version]", version, "", "[Files]"]
    lines.extend(f"{ts}\t{kind}\t{size}\t{path}" for ts, kind, size, path in entries)
    lines.append("")
    if checksums:
        lines.append(f"[{checksum_header}]")
        lines.extend(f"{digest}\t{path}" for digest, path in checksums)
        lines.append("")
    if end:
        lines.append("[End]")
    return "\n".join(lines) + "\n"


@pytest.fixture
def write_manifest():
    """Return a helper writing a file list to a path."""

    def _write(path: Path, entries, **kwargs) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_manifest(entries, **kwargs))
        return path

    return _write


@pytest.fixture
def epel_module():
    """The EPEL module mapping."""
    return EPEL


@pytest.fixture
def make_config(tmp_path):
    """Return a factory for MirrorConfig objects rooted in tmp_path."""

    def _make(**overrides) -> MirrorConfig:
        dest = tmp_path / "dest"
        dest.mkdir(exist_ok=True)
        state_dir = tmp_path / "state"
        state_dir.mkdir(exist_ok=True)
        settings = {
            "dest": dest,
            "timefile": state_dir / "timefile",
            "modules": [EPEL],
            "remote": "rsync://mirror.example.org",
            "master_module": "fedora-buffet",
            "rsync_options": [],
            "checkin_host": "mirror.example.org",
            "scratch_dir": tmp_path / "scratch",
        }
        settings.update(overrides)
        return MirrorConfig(**settings)

    return _make


class FakeRsync:
    """Stand-in for RsyncRunner that copies from a local "remote" tree.

    Return codes are consumed from a queue; once it is empty every call
    succeeds. Successful calls copy every listed path that exists below
    remote_root into the destination, unless "-n" was passed.
    """

    rsync_path = "rsync"

    def __init__(
        self,
        remote_root: Path,
        log_dir: Path,
        returncodes: Optional[list[int]] = None,
        stderr: str = "",
    ):
        self.remote_root = remote_root
        self.log_dir = log_dir
        self.returncodes = list(returncodes or [])
        self.stderr = stderr
        self.calls: list[list[str]] = []
        self.file_lists: list[list[str]] = []

    def run(self, args: list[str]) -> RsyncOutcome:
        self.calls.append(list(args))
        files_from = next(
            a.split("=", 1)[1] for a in args if a.startswith("--files-from=")
        )
        paths = Path(files_from).read_text().splitlines()
        self.file_lists.append(paths)

        rc = self.returncodes.pop(0) if self.returncodes else 0
        if rc != 0:
            return RsyncOutcome(returncode=rc, stderr=self.stderr)

        dest = Path(args[-1])
        copied = 0
        for rel in paths:
            src = self.remote_root / rel
            if "-n" in args or not src.exists():
                continue
            target = dest / rel
            if src.is_dir():
                target.mkdir(parents=True, exist_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, target)
                copied += 1

        self.log_dir.mkdir(parents=True, exist_ok=True)
        stdout = self.log_dir / f"rsync-{len(self.calls)}.log"
        stdout.write_text(
            f"Number of regular files transferred: {copied}\n"
            "Total file size: 1,024 bytes\n"
            "Total bytes sent: 100\n"
            "Total bytes received: 2,048\n"
        )
        return RsyncOutcome(returncode=0, stdout_path=stdout)

    def calls_with(self, option: str) -> list[list[str]]:
        return [c for c in self.calls if option in c]


@pytest.fixture
def fake_rsync(tmp_path):
    """Return a factory for FakeRsync runners serving tmp_path/remote."""

    def _make(**kwargs) -> FakeRsync:
        remote_root = tmp_path / "remote"
        remote_root.mkdir(exist_ok=True)
        return FakeRsync(remote_root, tmp_path / "rsync-logs", **kwargs)

    return _make
