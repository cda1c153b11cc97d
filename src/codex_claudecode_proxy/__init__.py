"""codex-claudecode-proxy package."""

__version__ = "0.2.0"

from .config import InstallerConfig, InstallTarget, TierRoute, load_installer_config, resolve_target
from .errors import (
    CommandError,
    DownloadError,
    InstallerError,
    PreconditionError,
    SettingsError,
    UnsupportedEnvironmentError,
    VerificationError,
)
from .reconciler import install, purge, start, status, stop, uninstall

__all__ = [
    "InstallerConfig",
    "InstallTarget",
    "TierRoute",
    "load_installer_config",
    "resolve_target",
    "InstallerError",
    "PreconditionError",
    "UnsupportedEnvironmentError",
    "SettingsError",
    "VerificationError",
    "DownloadError",
    "CommandError",
    "install",
    "start",
    "stop",
    "status",
    "uninstall",
    "purge",
]
