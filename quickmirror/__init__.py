"""quick-mirror - fast incremental mirroring of large rsync trees."""

__version__ = "0.1.0"

from .config import MirrorConfig, Module, load_config  # noqa: E402
from .exceptions import (  # noqa: E402
    CorruptManifestError,
    LockContentionError,
    ManifestError,
    ManifestFetchError,
    MirrorConfigError,
    MirrorError,
    RegistryCheckinError,
    RegistryError,
    RegistryNetworkError,
    SourceVanishedError,
    StaleFileListError,
    StateFileError,
    TransferError,
    TransferRetriesExhaustedError,
    UnexpectedTransferError,
    UnsupportedManifestVersionError,
)
from .registry import RegistryClient  # noqa: E402
from .transfer import TransferExecutor  # noqa: E402

__all__ = [
    "__version__",
    "MirrorConfig",
    "Module",
    "load_config",
    "RegistryClient",
    "TransferExecutor",
    "MirrorError",
    "MirrorConfigError",
    "LockContentionError",
    "StateFileError",
    "ManifestError",
    "ManifestFetchError",
    "UnsupportedManifestVersionError",
    "CorruptManifestError",
    "TransferError",
    "TransferRetriesExhaustedError",
    "StaleFileListError",
    "SourceVanishedError",
    "UnexpectedTransferError",
    "RegistryError",
    "RegistryNetworkError",
    "RegistryCheckinError",
]
