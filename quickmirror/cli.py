"""CLI interface for quick-mirror."""

import logging
import re
from pathlib import Path
from typing import Any, Optional

import click

from . import __version__
from .config import find_config, load_config
from .exceptions import MirrorConfigError
from .output import OutputFormatter
from .sync.engine import MirrorEngine, RunOptions, RunOutcome, RunReport
from .utils import format_duration, format_size, parse_backdate

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def log_level_for(verbosity: int) -> int:
    """Map the -d verbosity level to a logging level."""
    if verbosity >= 4:
        return logging.DEBUG
    if verbosity >= 1:
        return logging.INFO
    return logging.WARNING


def setup_logging(verbosity: int, log_file: Optional[Path] = None) -> None:
    """Configure logging for a run.

    Args:
        verbosity: -d level
        log_file: Optional file receiving the same log records
    """
    level = log_level_for(verbosity)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=level, format=LOG_FORMAT, datefmt="%H:%M:%S", handlers=handlers
    )
    logging.getLogger("quickmirror").setLevel(level)
    # Keep the HTTP client quiet unless debugging
    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def print_report(out: OutputFormatter, report: RunReport) -> None:
    """Display the summary of a run."""
    if report.outcome == RunOutcome.LOCK_CONTENTION:
        out.warning("Another run holds the lock; nothing done")
        return

    stats = report.transfer.stats if report.transfer else None
    rows = [
        ("Outcome", report.outcome.value),
        ("Changed modules", ", ".join(report.changed_modules) or "-"),
        ("Unchanged modules", ", ".join(report.unchanged_modules) or "-"),
    ]
    if report.failed_modules:
        rows.append(("Skipped modules", ", ".join(report.failed_modules)))
    rows.append(("Files/dirs to transfer", str(report.transfer_count)))
    if stats is not None:
        rows.append(("Files downloaded", str(stats.files_transferred)))
        rows.append(("Received", format_size(stats.bytes_received)))
        if report.transfer and report.transfer.retries:
            rows.append(("Retries", str(len(report.transfer.retries))))
    if report.delete_skipped:
        rows.append(("Deleted", "skipped"))
    else:
        rows.append(
            ("Deleted", f"{report.deleted_dirs} dir(s), {report.deleted_files} file(s)")
        )
    if report.checked_in or report.checkin_failed:
        rows.append(("Checked in", ", ".join(report.checked_in) or "-"))
    if report.checkin_failed:
        rows.append(("Checkin failed", ", ".join(report.checkin_failed)))
    rows.append(("Duration", format_duration(report.duration)))

    title = "Dry run summary" if report.dry_run else "Mirror summary"
    out.print_summary(title, rows)
    if report.exit_code == 0:
        out.success("Mirror run complete!")
    else:
        out.error(f"Mirror run failed: {report.message}")


@click.command()
@click.option(
    "--alwayscheck",
    "-a",
    is_flag=True,
    help="Process every module, even when its file list is unchanged",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Configuration file to use",
)
@click.option(
    "-d",
    "verbosity",
    type=click.IntRange(min=0),
    default=None,
    help="Verbosity level (0 quiet, 1-3 informational, 4+ debug)",
)
@click.option("--dry-run", "-n", is_flag=True, help="Do not change anything locally")
@click.option(
    "--transfer-only",
    "-N",
    is_flag=True,
    help="Transfer only; no deletes, no timestamp update, no checkin",
)
@click.option(
    "-t",
    "timestamp",
    type=int,
    default=None,
    help="Use TIMESTAMP (epoch seconds) as the last mirror time",
)
@click.option(
    "--backdate",
    "-T",
    metavar="DATE",
    help="Use DATE (ISO 8601) as the last mirror time",
)
@click.option(
    "--checkin-only",
    is_flag=True,
    help="Check in every module without transferring anything",
)
@click.option("--dir-times", is_flag=True, help="Update the times of all directories")
@click.option(
    "--refresh",
    metavar="REGEX",
    help="Transfer remote files matching REGEX again",
)
@click.option(
    "--dump-checkin",
    metavar="PREFIX",
    help="Write checkin requests to PREFIX-<module> instead of sending them",
)
@click.option(
    "--no-paranoia",
    is_flag=True,
    help="Do not backdate the saved mirror time by a few seconds",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.version_option(version=__version__, prog_name="quick-mirror")
@click.pass_context
def main(
    ctx: Any,
    alwayscheck: bool,
    config_path: Optional[str],
    verbosity: Optional[int],
    dry_run: bool,
    transfer_only: bool,
    timestamp: Optional[int],
    backdate: Optional[str],
    checkin_only: bool,
    dir_times: bool,
    refresh: Optional[str],
    dump_checkin: Optional[str],
    no_paranoia: bool,
    quiet: bool,
    json_output: bool,
) -> None:
    """quick-mirror - fast incremental mirroring driven by remote file lists."""
    out = OutputFormatter(json_output=json_output, quiet=quiet)

    last_mirror_time = timestamp
    if backdate:
        last_mirror_time = parse_backdate(backdate)
        if last_mirror_time is None:
            raise click.BadParameter(
                f"Cannot parse date: {backdate}", param_hint="--backdate"
            )
    if refresh:
        try:
            re.compile(refresh)
        except re.error as e:
            raise click.BadParameter(str(e), param_hint="--refresh") from e

    try:
        config = load_config(find_config(config_path))
    except MirrorConfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if verbosity is not None:
        config.verbose = verbosity
    setup_logging(config.verbose, config.log_file)
    logger.debug(f"Using configuration {config.config_path}")

    options = RunOptions(
        always_check=alwayscheck,
        dry_run=dry_run,
        transfer_only=transfer_only,
        last_mirror_time=last_mirror_time,
        checkin_only=checkin_only,
        dir_times=dir_times,
        refresh=refresh,
        no_paranoia=no_paranoia,
        dump_checkin=dump_checkin,
    )
    engine = MirrorEngine(config, out)
    report = engine.run(options)

    if json_output:
        out.output_json(report.to_dict())
    else:
        print_report(out, report)
    ctx.exit(report.exit_code)


if __name__ == "__main__":
    main()
