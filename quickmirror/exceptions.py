"""Exceptions raised by quickmirror."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .transfer import RsyncOutcome


class MirrorError(Exception):
    """Base exception for all mirror errors."""


class MirrorConfigError(MirrorError):
    """Raised when the configuration is missing or invalid."""


class LockContentionError(MirrorError):
    """Raised when another run already holds the lock for a target."""


class StateFileError(MirrorError):
    """Raised when the run state file cannot be written."""


# =========================
# Manifest errors
# =========================


class ManifestError(MirrorError):
    """Base class for file list problems."""


class ManifestFetchError(ManifestError):
    """Raised when the file lists could not be retrieved."""


class UnsupportedManifestVersionError(ManifestError):
    """Raised when a file list declares a version we cannot process."""

    def __init__(self, path: str, version: Optional[int], max_version: int):
        self.path = path
        self.version = version
        self.max_version = max_version
        found = "unparseable" if version is None else str(version)
        super().__init__(
            f"File list {path} has version {found}; "
            f"the highest supported version is {max_version}"
        )


class CorruptManifestError(ManifestError):
    """Raised when a file list is incomplete (no end marker)."""


# =========================
# Transfer errors
# =========================


class TransferError(MirrorError):
    """Base class for failed rsync operations.

    Carries the last rsync outcome so callers can log full diagnostics.
    """

    def __init__(self, message: str, outcome: Optional["RsyncOutcome"] = None):
        super().__init__(message)
        self.outcome = outcome

    @property
    def returncode(self) -> Optional[int]:
        """Return code of the last rsync call, if any."""
        return self.outcome.returncode if self.outcome is not None else None

    @property
    def stderr(self) -> str:
        """Error output of the last rsync call."""
        return self.outcome.stderr if self.outcome is not None else ""


class TransferRetriesExhaustedError(TransferError):
    """Raised when a retryable rsync failure persists past the retry limit."""


class StaleFileListError(TransferError):
    """Raised when the transfer list references files gone from the remote.

    A retry will not help; a fresh file list fetch is needed.
    """


class SourceVanishedError(TransferError):
    """Raised when rsync reports source files vanished during the transfer."""


class UnexpectedTransferError(TransferError):
    """Raised when rsync returns a code we do not know how to handle."""


# =========================
# Registry errors
# =========================


class RegistryError(MirrorError):
    """Base class for registry checkin errors."""


class RegistryNetworkError(RegistryError):
    """Raised on transport-level checkin failures."""


class RegistryCheckinError(RegistryError):
    """Raised when the registry response does not report success."""
