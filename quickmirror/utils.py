"""Utility functions for quickmirror."""

import hashlib
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

# =============================================================================
# Constants
# =============================================================================

# Highest file list format version we know how to process
MAX_MANIFEST_VERSION: int = 3

# Retry configuration for rsync and checkin calls
DEFAULT_MAX_RETRIES: int = 10
DEFAULT_CHECKIN_RETRY_DELAY: float = 2.0  # seconds

# Per-call rsync I/O timeout (10 minutes)
DEFAULT_RSYNC_TIMEOUT: int = 60 * 10

# Warn on lock contention when no run has completed for a day
DEFAULT_WARN_DELAY: int = 60 * 60 * 24

# Seconds subtracted from the start time before it is saved
PARANOIA_SECONDS: int = 5

# Name of the rsync --delay-updates partial directory
RSYNC_TEMP_DIR_NAME: str = ".~tmp~"

# Files below this size are dropped from partial dirs when working around
# the rsync partial-dir bug
SMALL_FILE_THRESHOLD: int = 2048

# Read size used when hashing files
HASH_CHUNK_SIZE: int = 1024 * 1024


# =============================================================================
# Timestamp parsing utilities
# =============================================================================


def parse_backdate(timestamp_str: Optional[str]) -> Optional[int]:
    """Parse a human supplied date into epoch seconds.

    Accepts either a plain integer (already epoch seconds) or an ISO 8601
    date/time. A trailing 'Z' is treated as UTC.

    Args:
        timestamp_str: Date string (e.g., "2025-01-15", "2025-01-15T10:30:00Z")

    Returns:
        Epoch seconds, or None if the string cannot be parsed
    """
    if not timestamp_str:
        return None

    value = timestamp_str.strip()
    if value.isdigit():
        return int(value)

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    try:
        return int(datetime.fromisoformat(value).timestamp())
    except ValueError:
        return None


# =============================================================================
# Formatting utilities
# =============================================================================


def format_size(size_bytes: Optional[Union[int, float]]) -> str:
    """Format a byte count in human-readable form.

    Args:
        size_bytes: Size in bytes (None renders as "?")

    Returns:
        Formatted size string (e.g., "1.50MB", "256B")
    """
    if size_bytes is None:
        return "?"
    if size_bytes < 1024:
        return f"{int(size_bytes)}B"

    value = size_bytes / 1024.0
    unit = "KB"
    for unit in ("KB", "MB", "GB", "TB", "PB", "EB"):
        if value < 1024:
            break
        value /= 1024.0
    return f"{value:.2f}{unit}"


def format_duration(seconds: Optional[float]) -> str:
    """Format a number of seconds in human-readable form.

    Args:
        seconds: Duration in seconds (None renders as "?")

    Returns:
        Formatted duration (e.g., "12s", "3.50m", "1.25h")
    """
    if seconds is None:
        return "?"
    if seconds < 60:
        return f"{seconds:g}s"
    minutes = seconds / 60.0
    if minutes < 60:
        return f"{minutes:.2f}m"
    return f"{minutes / 60.0:.2f}h"


def format_epoch(epoch: int) -> str:
    """Format epoch seconds as a local date/time string."""
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


# =============================================================================
# Hash calculation utilities
# =============================================================================


def file_digest(path: Path, algorithm: str = "sha1") -> str:
    """Calculate the hex digest of a file.

    Args:
        path: File to hash
        algorithm: hashlib algorithm name

    Returns:
        Hex digest string
    """
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def substitute_mdir(template: str, module_dir: str) -> str:
    """Expand the module directory placeholder in a file name template.

    Examples:
        >>> substitute_mdir("fullfiletimelist-{mdir}", "epel")
        'fullfiletimelist-epel'
    """
    return template.replace("{mdir}", module_dir).replace("$mdir", module_dir)
