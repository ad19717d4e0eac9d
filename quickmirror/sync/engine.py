"""Run coordinator for a complete mirror run."""

import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from rich.progress import Progress, SpinnerColumn, TextColumn

from ..config import MirrorConfig
from ..exceptions import (
    CorruptManifestError,
    LockContentionError,
    MirrorError,
    TransferError,
)
from ..output import OutputFormatter
from ..registry import RegistryClient
from ..transfer import RsyncRunner, TransferExecutor, TransferResult
from ..utils import (
    PARANOIA_SECONDS,
    RSYNC_TEMP_DIR_NAME,
    format_duration,
    format_epoch,
    format_size,
)
from .manifest import ManifestHandle, ManifestStore
from .operations import DeleteResult, SyncOperations
from .reconciler import Reconciler, TransferSet
from .recovery import RecoveryManager
from .state import RunLock, RunStateManager, write_status

logger = logging.getLogger(__name__)

DIRECTORY_SIZES_FILE = "DIRECTORY_SIZES.txt"


@dataclass
class RunOptions:
    """Per-invocation controls of a mirror run."""

    always_check: bool = False
    """Reconcile modules even when their file list did not change"""

    dry_run: bool = False
    """Pass -n to rsync; no delete, no state update, no checkin"""

    transfer_only: bool = False
    """Transfer only; no delete, no state update, no checkin"""

    last_mirror_time: Optional[int] = None
    """Override of the stored last mirror time"""

    checkin_only: bool = False
    """Only check in every module; nothing is transferred or deleted"""

    dir_times: bool = False
    """Restore the timestamp of every directory"""

    refresh: Optional[str] = None
    """Regex of remote files to transfer again"""

    no_paranoia: bool = False
    """Do not backdate the start time"""

    dump_checkin: Optional[str] = None
    """Write checkin requests to "<prefix>-<module>" instead of sending them"""

    @property
    def force_check(self) -> bool:
        return (
            self.always_check
            or self.last_mirror_time is not None
            or self.dir_times
            or self.checkin_only
            or self.refresh is not None
        )

    @property
    def skip_delete(self) -> bool:
        return (
            self.dry_run
            or self.transfer_only
            or self.checkin_only
            or self.refresh is not None
        )

    @property
    def skip_state(self) -> bool:
        return self.skip_delete

    @property
    def skip_checkin(self) -> bool:
        return self.dry_run or self.transfer_only or self.refresh is not None


class RunOutcome(str, Enum):
    """Final outcome of a run."""

    SUCCESS = "success"
    NO_CHANGES = "no_changes"
    LOCK_CONTENTION = "lock_contention"
    FAILED = "failed"


@dataclass
class RunReport:
    """What happened during one run."""

    start_time: int
    """Start time used as the next last mirror time (possibly backdated)"""

    started_at: Optional[float] = None
    """Wall clock time the run actually started"""

    last_mirror_time: int = 0
    outcome: RunOutcome = RunOutcome.SUCCESS
    exit_code: int = 0
    message: str = ""
    end_time: Optional[float] = None
    dry_run: bool = False

    changed_modules: list[str] = field(default_factory=list)
    unchanged_modules: list[str] = field(default_factory=list)
    failed_modules: list[str] = field(default_factory=list)
    module_counts: dict[str, dict[str, int]] = field(default_factory=dict)

    transfer_count: int = 0
    transfer: Optional[TransferResult] = None
    deleted_files: int = 0
    deleted_dirs: int = 0
    delete_skipped: bool = False
    state_saved: bool = False
    checked_in: list[str] = field(default_factory=list)
    checkin_failed: list[str] = field(default_factory=list)
    scratch_dir: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        began = self.started_at if self.started_at is not None else self.start_time
        return max(0.0, self.end_time - began)

    def fail(self, message: str) -> None:
        self.outcome = RunOutcome.FAILED
        self.exit_code = 1
        self.message = message

    def to_dict(self) -> dict:
        """Convert report to dictionary for JSON serialization."""
        stats = self.transfer.stats if self.transfer else None
        return {
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "message": self.message,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "last_mirror_time": self.last_mirror_time,
            "dry_run": self.dry_run,
            "changed_modules": self.changed_modules,
            "unchanged_modules": self.unchanged_modules,
            "failed_modules": self.failed_modules,
            "module_counts": self.module_counts,
            "transfer_count": self.transfer_count,
            "files_transferred": stats.files_transferred if stats else None,
            "bytes_received": stats.bytes_received if stats else None,
            "transfer_stats": stats.to_dict() if stats else None,
            "transfer_retries": len(self.transfer.retries) if self.transfer else 0,
            "deleted_files": self.deleted_files,
            "deleted_dirs": self.deleted_dirs,
            "delete_skipped": self.delete_skipped,
            "state_saved": self.state_saved,
            "checked_in": self.checked_in,
            "checkin_failed": self.checkin_failed,
        }


class MirrorEngine:
    """Drives one mirror run from lock acquisition to checkin."""

    def __init__(
        self,
        config: MirrorConfig,
        output: Optional[OutputFormatter] = None,
        executor: Optional[TransferExecutor] = None,
        registry: Optional[RegistryClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize mirror engine.

        Args:
            config: Mirror configuration
            output: Output formatter for displaying progress/status
            executor: Transfer executor (built per run when not given)
            registry: Registry client (built from config when not given)
            clock: Source of the current time
        """
        self.config = config
        self.output = output or OutputFormatter()
        self.executor = executor
        self.registry = registry
        self.clock = clock
        self.state_manager = RunStateManager(config.timefile)

    def run(self, options: Optional[RunOptions] = None) -> RunReport:
        """Perform a mirror run.

        Args:
            options: Run controls

        Returns:
            RunReport; exit_code is 0 on success and 1 on failure or
            lock contention

        Examples:
            >>> engine = MirrorEngine(load_config(Path("quick-mirror.toml")))
            >>> report = engine.run(RunOptions(dry_run=True))
            >>> print(report.transfer_count)
        """
        options = options or RunOptions()
        started_at = self.clock()
        start = int(started_at)
        if not options.no_paranoia:
            start -= PARANOIA_SECONDS

        report = RunReport(
            start_time=start, started_at=started_at, dry_run=options.dry_run
        )
        last = self.state_manager.load().last_mirror_time
        if options.last_mirror_time is not None:
            last = options.last_mirror_time
        report.last_mirror_time = last

        lock = RunLock(self.config.timefile)
        try:
            lock.acquire()
        except LockContentionError as e:
            logger.info(f"Lock contention: {e}")
            self._check_stale(start, last, options.last_mirror_time is not None)
            report.outcome = RunOutcome.LOCK_CONTENTION
            report.exit_code = 1
            report.message = str(e)
            return report

        logger.info(f"Mirror starting: {format_epoch(start)}")
        scratch = self._make_scratch_dir()
        report.scratch_dir = str(scratch)
        try:
            self._run_locked(options, report, scratch, last)
        except TransferError as e:
            logger.error("rsync failed; aborting run. Will not check in or delete")
            self.output.error(f"rsync failed: {e}")
            report.fail(str(e))
        except MirrorError as e:
            logger.error(str(e))
            self.output.error(str(e))
            report.fail(str(e))
        except OSError as e:
            logger.error(f"Filesystem error; aborting run: {e}")
            self.output.error(f"Filesystem error: {e}")
            report.fail(str(e))
        finally:
            self._finish(report, scratch)
            lock.release()
        return report

    def _check_stale(self, start: int, last: int, backdated: bool) -> None:
        """Complain when no run has completed for longer than warn_delay."""
        delay = 0 if backdated or last == 0 else start - last
        if delay > self.config.warn_delay:
            message = f"No completed run since {format_epoch(last)}."
            logger.error(message)
            self.output.error(message)

    def _make_scratch_dir(self) -> Path:
        scratch_parent = self.config.scratch_dir
        if scratch_parent is not None:
            scratch_parent.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix="quick-mirror.", dir=scratch_parent))

    def _get_executor(self, scratch: Path) -> TransferExecutor:
        if self.executor is not None:
            return self.executor
        runner = RsyncRunner(self.config.rsync_path, log_dir=scratch)
        return TransferExecutor(
            runner,
            options=self.config.rsync_options,
            timeout=self.config.rsync_timeout,
            max_retries=self.config.max_retries,
            verbose=self.config.verbose,
            work_dir=scratch,
        )

    def _run_locked(
        self, options: RunOptions, report: RunReport, scratch: Path, last: int
    ) -> None:
        config = self.config
        executor = self._get_executor(scratch)

        store = ManifestStore(config, executor, scratch)
        handles = store.prepare()
        store.fetch(handles)
        store.validate(handles)

        recovery = None
        if config.rsync_recovery and not (options.dry_run or options.checkin_only):
            recovery = RecoveryManager(config.dest, config.partial_dir_bug)
        reconciler = Reconciler(
            config,
            last,
            recovery=recovery,
            update_all_dir_times=options.dir_times,
            refresh_pattern=options.refresh,
        )

        sets = self._reconcile_modules(handles, reconciler, options, report)
        if not sets:
            logger.info("No changes to synchronize")
            self.output.info("No changes to synchronize")
            report.outcome = RunOutcome.NO_CHANGES
            return

        if options.checkin_only:
            if config.checkin_enabled or options.dump_checkin:
                self._checkin(sets, options, report)
            else:
                logger.warning("No checkin site configured; nothing to check in")
                self.output.warning("No checkin site configured")
            return

        transfer_list = self._merge_transfer_lists(sets, options)
        report.transfer_count = len(transfer_list)
        extra = ["-n"] if options.dry_run else []

        self.output.info(f"Transferring {len(transfer_list)} file(s)")
        result = executor.transfer(
            config.source, config.dest, transfer_list, extra_options=extra
        )
        report.transfer = result
        self._log_transfer_stats(result)

        delete_result = self._delete(sets, options)
        report.deleted_dirs = len(delete_result.deleted_dirs)
        report.deleted_files = len(delete_result.deleted_files)
        report.delete_skipped = delete_result.skipped

        if config.keep_dir_times or options.dir_times:
            self._restore_timestamps(executor, sets, extra)

        if not options.skip_state:
            self.state_manager.save(report.start_time)
            report.state_saved = True

        if options.dump_checkin or (
            config.checkin_enabled and not options.skip_checkin
        ):
            self._checkin(sets, options, report)

    def _reconcile_modules(
        self,
        handles: dict[str, ManifestHandle],
        reconciler: Reconciler,
        options: RunOptions,
        report: RunReport,
    ) -> list[TransferSet]:
        """Reconcile every module whose file list changed."""
        sets: list[TransferSet] = []
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            console=self.output.console,
            disable=self.output.quiet or self.output.json_output,
        ) as progress:
            for module in self.config.modules:
                handle = handles[module.name]
                if not options.force_check and handle.is_unchanged():
                    logger.info(f"No change in file list for {module.name}")
                    report.unchanged_modules.append(module.name)
                    continue

                task = progress.add_task(f"Processing {module.name}...", total=None)
                try:
                    ts = reconciler.reconcile(
                        handle, remote_only=options.checkin_only
                    )
                except CorruptManifestError as e:
                    logger.error(f"Skipping {module.name}: {e}")
                    self.output.warning(f"Skipping {module.name}: {e}")
                    report.failed_modules.append(module.name)
                    progress.remove_task(task)
                    continue

                progress.update(
                    task,
                    description=(
                        f"{module.name}: {len(ts.transfer_list)} to transfer"
                    ),
                )
                if len(ts.transfer_list) <= 5:
                    for path in ts.transfer_list:
                        logger.info(f"    {path}")
                sets.append(ts)
                report.changed_modules.append(module.name)
                report.module_counts[module.name] = ts.counts()
        return sets

    def _merge_transfer_lists(
        self, sets: list[TransferSet], options: RunOptions
    ) -> list[str]:
        """Merge every module's transfer list into one sorted list."""
        merged: set[str] = set()
        for ts in sets:
            merged.update(ts.transfer_list)

        if self.config.mirror_buffet:
            merged.add(DIRECTORY_SIZES_FILE)
            top_temp = self.config.dest / RSYNC_TEMP_DIR_NAME
            if self.config.partial_dir_bug and not options.dry_run:
                if top_temp.is_dir():
                    logger.info(f"Removing {top_temp}")
                    shutil.rmtree(top_temp)
        return sorted(merged)

    def _log_transfer_stats(self, result: TransferResult) -> None:
        stats = result.stats
        logger.info("Main transfer statistics:")
        logger.info(f"    Downloaded files: {stats.files_transferred}")
        logger.info(
            f"    Total size of those files: {format_size(stats.total_file_size)}"
        )
        logger.info(f"    Received: {format_size(stats.bytes_received)}")
        logger.info(f"    Sent: {format_size(stats.bytes_sent)}")
        logger.info(f"    Speedup: {stats.speedup}")
        logger.info(f"    Transfer speed: {format_size(stats.transfer_speed)}/s")
        logger.info(
            "    File list generation time: "
            f"{format_duration(stats.file_list_generation_time)}"
        )
        logger.info(
            "    File list transfer time: "
            f"{format_duration(stats.file_list_transfer_time)}"
        )
        if result.retries:
            logger.info(f"    Retries: {len(result.retries)}")

    def _delete(self, sets: list[TransferSet], options: RunOptions) -> DeleteResult:
        dirs: set[str] = set()
        files: set[str] = set()
        for ts in sets:
            dirs.update(ts.delete_dirs)
            files.update(ts.delete_files)

        operations = SyncOperations(self.config.dest)
        result = operations.delete(dirs, files, report_only=options.skip_delete)
        if options.skip_delete and (dirs or files):
            self.output.info(
                f"Not deleting {len(dirs)} dir(s) and {len(files)} file(s)"
            )
        return result

    def _restore_timestamps(
        self, executor: TransferExecutor, sets: list[TransferSet], extra: list[str]
    ) -> None:
        dirs: set[str] = set()
        for ts in sets:
            dirs.update(ts.update_timestamps)
        if not dirs:
            return
        logger.info(f"Updating timestamps on {len(dirs)} dir(s)")
        try:
            executor.transfer(
                self.config.source,
                self.config.dest,
                sorted(dirs),
                extra_options=extra,
                label="timestamps",
            )
        except TransferError as e:
            logger.warning(f"Could not update directory timestamps: {e}")
            self.output.warning("Directory timestamps were not updated")

    def _checkin(
        self, sets: list[TransferSet], options: RunOptions, report: RunReport
    ) -> None:
        """Check in every reconciled module; failures are only recorded."""
        registry = self.registry
        owned = registry is None
        if registry is None:
            registry = RegistryClient.from_config(
                self.config, dump_prefix=options.dump_checkin
            )
        logger.info("Registry checkin start")
        try:
            for ts in sets:
                if registry.checkin(ts.module, ts.all_dirs):
                    report.checked_in.append(ts.module.name)
                else:
                    report.checkin_failed.append(ts.module.name)
                    self.output.warning(f"Checkin for {ts.module.name} failed")
        finally:
            if owned:
                registry.close()
        logger.info("Registry checkin end")

    def _finish(self, report: RunReport, scratch: Path) -> None:
        report.end_time = self.clock()
        write_status(self.config.state_status_file, report.to_dict())

        if self.config.keep_scratch:
            logger.info(f"Keeping scratch directory {scratch}")
        else:
            shutil.rmtree(scratch, ignore_errors=True)

        logger.info(
            f"Mirror finished: {report.outcome.value} "
            f"in {format_duration(report.duration)}"
        )
