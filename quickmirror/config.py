"""Configuration loading for quickmirror.

Configuration is read from a TOML file. Search order:
  1) explicit --config path
  2) $QUICKMIRROR_CONFIG
  3) /etc/quick-mirror/quick-mirror.toml
  4) /etc/quick-mirror.toml
  5) ~/.config/quick-mirror.toml
  6) ./quick-mirror.toml
"""

from __future__ import annotations

import logging
import os
import re
import socket
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .exceptions import MirrorConfigError
from .utils import (
    DEFAULT_CHECKIN_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RSYNC_TIMEOUT,
    DEFAULT_WARN_DELAY,
)

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "QUICKMIRROR_CONFIG"

DEFAULT_REGISTRY_URL = "https://admin.fedoraproject.org/mirrormanager/xmlrpc"

# module name -> (directory, registry name, registry dir)
DEFAULT_MODULE_MAPPING: dict[str, tuple[str, str, str]] = {
    "fedora-alt": ("alt", "fedora other", "alt"),
    "fedora-archive": ("archive", "fedora archive", "archive"),
    "fedora-enchilada": ("fedora", "fedora linux", "fedora/linux"),
    "fedora-epel": ("epel", "fedora epel", "epel"),
    "fedora-secondary": (
        "fedora-secondary",
        "fedora secondary arches",
        "fedora-secondary",
    ),
}


@dataclass(frozen=True)
class Module:
    """A named, independently mirrored subtree of the master module."""

    name: str
    """Logical module name (e.g. "fedora-epel")"""

    directory: str
    """Directory of the module below the destination root"""

    registry_name: str
    """Category name reported to the registry"""

    registry_dir: str
    """Prefix stripped from directory paths in the registry checkin"""

    checkin_host: Optional[str] = None
    """Registry host name override for this module"""


@dataclass
class MirrorConfig:
    """Complete configuration for one mirror target."""

    dest: Path
    timefile: Path
    modules: list[Module]
    remote: str = "rsync://dl.fedoraproject.org"
    master_module: str = "fedora-buffet"
    mirror_buffet: bool = False
    filelist: str = "fullfiletimelist-{mdir}"
    extra_files: list[str] = field(
        default_factory=lambda: ["fullfilelist", "imagelist-{mdir}"]
    )
    fetch_extra_files: bool = False
    filter: Optional[str] = None
    include_restricted: bool = False
    keep_dir_times: bool = False
    rsync_recovery: bool = True
    partial_dir_bug: bool = False
    scratch_dir: Optional[Path] = None
    keep_scratch: bool = False
    status_file: Optional[Path] = None

    rsync_path: str = "/usr/bin/rsync"
    rsync_timeout: int = DEFAULT_RSYNC_TIMEOUT
    rsync_options: Optional[list[str]] = None
    max_retries: int = DEFAULT_MAX_RETRIES

    checkin_site: Optional[str] = None
    checkin_password: str = ""
    checkin_host: str = field(default_factory=socket.gethostname)
    registry_url: str = DEFAULT_REGISTRY_URL
    max_checkin_retries: int = DEFAULT_MAX_RETRIES
    checkin_retry_delay: float = DEFAULT_CHECKIN_RETRY_DELAY
    checkin_timeout: float = 60.0

    verbose: int = 0
    log_file: Optional[Path] = None
    warn_delay: int = DEFAULT_WARN_DELAY

    config_path: Optional[Path] = None

    @property
    def checkin_enabled(self) -> bool:
        """Checkin is only performed when a site is configured."""
        return bool(self.checkin_site)

    @property
    def filter_regex(self) -> Optional[re.Pattern[str]]:
        """Compiled content filter, if one is configured."""
        return re.compile(self.filter) if self.filter else None

    @property
    def source(self) -> str:
        """rsync source URL for the master module."""
        return f"{self.remote.rstrip('/')}/{self.master_module}/"

    @property
    def state_status_file(self) -> Path:
        """Path of the status artifact written at the end of every run."""
        if self.status_file is not None:
            return self.status_file
        return self.timefile.with_name(self.timefile.name + ".status")

    def get_module(self, name: str) -> Module:
        """Look up a configured module by name."""
        for module in self.modules:
            if module.name == name:
                return module
        raise KeyError(name)


def _gv(d: dict[str, Any], path: list[str], default: Any = None) -> Any:
    cur: Any = d
    for k in path:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _optional_path(value: Any) -> Optional[Path]:
    return Path(value) if value else None


def find_config(path_arg: Optional[str] = None) -> Path:
    """Pick the configuration file to use.

    Args:
        path_arg: Path given on the command line, if any

    Returns:
        Path to an existing configuration file

    Raises:
        MirrorConfigError: If no configuration file can be found
    """
    if path_arg:
        p = Path(path_arg)
        if not p.is_file():
            raise MirrorConfigError(f"Cannot read {path_arg}")
        return p

    candidates = []
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        candidates.append(Path(env_path))
    candidates.extend(
        [
            Path("/etc/quick-mirror/quick-mirror.toml"),
            Path("/etc/quick-mirror.toml"),
            Path.home() / ".config" / "quick-mirror.toml",
            Path("quick-mirror.toml"),
        ]
    )
    for candidate in candidates:
        if candidate.is_file():
            return candidate

    raise MirrorConfigError(
        "No configuration file found; use --config or set " + CONFIG_ENV_VAR
    )


def build_modules(
    module_table: dict[str, Any],
    host_overrides: dict[str, str],
) -> dict[str, Module]:
    """Merge the built-in module mapping with configured overrides.

    Args:
        module_table: The [modules] table from the configuration file
        host_overrides: The [checkin.hosts] table (module -> host name)

    Returns:
        Dictionary mapping module name to Module
    """
    merged: dict[str, dict[str, str]] = {
        name: {"directory": d, "registry_name": r, "registry_dir": rd}
        for name, (d, r, rd) in DEFAULT_MODULE_MAPPING.items()
    }

    for name, settings in module_table.items():
        if not isinstance(settings, dict):
            raise MirrorConfigError(f"[modules.{name}] must be a table")
        entry = merged.setdefault(name, {})
        entry.update({k: str(v) for k, v in settings.items()})
        if "directory" not in entry:
            raise MirrorConfigError(f"Module {name} has no directory configured")

    unknown_hosts = set(host_overrides) - set(merged)
    if unknown_hosts:
        logger.warning(
            "Ignoring checkin host override for unknown module(s): %s",
            ", ".join(sorted(unknown_hosts)),
        )

    modules: dict[str, Module] = {}
    for name, entry in merged.items():
        directory = entry["directory"]
        modules[name] = Module(
            name=name,
            directory=directory,
            registry_name=entry.get("registry_name", name),
            registry_dir=entry.get("registry_dir", directory),
            checkin_host=host_overrides.get(name) or None,
        )
    return modules


def load_config(path: Path) -> MirrorConfig:
    """Load and validate a configuration file.

    Args:
        path: Path to the TOML configuration file

    Returns:
        Validated MirrorConfig

    Raises:
        MirrorConfigError: If the file cannot be parsed or required
            settings are missing
    """
    try:
        cfg = _load_toml(path)
    except OSError as e:
        raise MirrorConfigError(f"Cannot read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise MirrorConfigError(f"Invalid configuration file {path}: {e}") from e

    def gv(keys: list[str], default: Any = None) -> Any:
        return _gv(cfg, keys, default)

    dest = gv(["mirror", "dest"])
    if not dest:
        raise MirrorConfigError(f"You must define mirror.dest in {path}")
    timefile = gv(["mirror", "timefile"])
    if not timefile:
        raise MirrorConfigError(f"You must define mirror.timefile in {path}")

    host_overrides = gv(["checkin", "hosts"], {}) or {}
    known_modules = build_modules(gv(["modules"], {}) or {}, host_overrides)

    mirror_buffet = bool(gv(["mirror", "mirror_buffet"], False))
    if mirror_buffet:
        module_names = list(known_modules)
    else:
        module_names = list(
            gv(["mirror", "modules"], ["fedora-enchilada", "fedora-epel"])
        )
    missing = [name for name in module_names if name not in known_modules]
    if missing:
        raise MirrorConfigError(
            f"No directory mapping for module(s): {', '.join(missing)}"
        )
    if not module_names:
        raise MirrorConfigError(f"No modules configured in {path}")

    filter_exp = gv(["mirror", "filter"]) or None
    if filter_exp:
        try:
            re.compile(filter_exp)
        except re.error as e:
            raise MirrorConfigError(f"Invalid filter expression: {e}") from e

    max_retries = int(gv(["rsync", "max_retries"], DEFAULT_MAX_RETRIES))
    rsync_options = gv(["rsync", "options"])

    return MirrorConfig(
        dest=Path(dest),
        timefile=Path(timefile),
        modules=[known_modules[name] for name in module_names],
        remote=gv(["mirror", "remote"], "rsync://dl.fedoraproject.org"),
        master_module=gv(["mirror", "master_module"], "fedora-buffet"),
        mirror_buffet=mirror_buffet,
        filelist=gv(["mirror", "filelist"], "fullfiletimelist-{mdir}"),
        extra_files=list(
            gv(["mirror", "extra_files"], ["fullfilelist", "imagelist-{mdir}"])
        ),
        fetch_extra_files=bool(gv(["mirror", "fetch_extra_files"], False)),
        filter=filter_exp,
        include_restricted=bool(gv(["mirror", "include_restricted"], False)),
        keep_dir_times=bool(gv(["mirror", "keep_dir_times"], False)),
        rsync_recovery=bool(gv(["mirror", "rsync_recovery"], True)),
        partial_dir_bug=bool(gv(["mirror", "partial_dir_bug"], False)),
        scratch_dir=_optional_path(gv(["mirror", "scratch_dir"])),
        keep_scratch=bool(gv(["mirror", "keep_scratch"], False)),
        status_file=_optional_path(gv(["mirror", "status_file"])),
        rsync_path=gv(["rsync", "path"], "/usr/bin/rsync"),
        rsync_timeout=int(gv(["rsync", "timeout"], DEFAULT_RSYNC_TIMEOUT)),
        rsync_options=list(rsync_options) if rsync_options else None,
        max_retries=max_retries,
        checkin_site=gv(["checkin", "site"]) or None,
        checkin_password=gv(["checkin", "password"], ""),
        checkin_host=gv(["checkin", "host"]) or socket.gethostname(),
        registry_url=gv(["checkin", "url"], DEFAULT_REGISTRY_URL),
        max_checkin_retries=int(gv(["checkin", "max_retries"], max_retries)),
        checkin_retry_delay=float(
            gv(["checkin", "retry_delay"], DEFAULT_CHECKIN_RETRY_DELAY)
        ),
        checkin_timeout=float(gv(["checkin", "timeout"], 60.0)),
        verbose=int(gv(["logging", "verbose"], 0)),
        log_file=_optional_path(gv(["logging", "file"])),
        warn_delay=int(gv(["logging", "warn_delay"], DEFAULT_WARN_DELAY)),
        config_path=path,
    )
