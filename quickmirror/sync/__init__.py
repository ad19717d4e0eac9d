"""Sync engine for quick-mirror - file lists, reconciliation and runs."""

from .engine import MirrorEngine, RunOptions, RunOutcome, RunReport
from .manifest import (
    EntryKind,
    ManifestEntry,
    ManifestHandle,
    ManifestReader,
    ManifestStore,
)
from .operations import DeleteResult, SyncOperations
from .reconciler import Reconciler, TransferSet
from .recovery import RecoveryManager, RecoveryResult
from .scanner import DirectoryScanner, LocalEntry, LocalTree
from .state import RunLock, RunState, RunStateManager, write_status

__all__ = [
    "MirrorEngine",
    "RunOptions",
    "RunOutcome",
    "RunReport",
    "EntryKind",
    "ManifestEntry",
    "ManifestHandle",
    "ManifestReader",
    "ManifestStore",
    "DeleteResult",
    "SyncOperations",
    "Reconciler",
    "TransferSet",
    "RecoveryManager",
    "RecoveryResult",
    "DirectoryScanner",
    "LocalEntry",
    "LocalTree",
    "RunLock",
    "RunState",
    "RunStateManager",
    "write_status",
]
