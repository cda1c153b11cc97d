"""Exception types raised by the installer.

Every module raises one of these; only the CLI turns them into a message and
an exit code.
"""

from __future__ import annotations


class InstallerError(Exception):
    """Base class for all fatal installer conditions."""


class PreconditionError(InstallerError):
    """Wrong OS, missing credential, or missing prior install."""


class UnsupportedEnvironmentError(InstallerError):
    """Host CPU architecture has no matching release asset."""


class SettingsError(InstallerError):
    """A foreign JSON document could not be parsed."""


class VerificationError(InstallerError):
    """Health or reasoning-effort checks failed after all retries."""


class DownloadError(InstallerError):
    """Release metadata or asset could not be fetched or unpacked."""


class CommandError(InstallerError):
    """An external command exited nonzero where failure is not tolerated."""

    def __init__(self, command: list[str], returncode: int | None, stdout: str = "", stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(self._format())

    def _format(self) -> str:
        parts = [" ".join(self.command)]
        if self.returncode is not None:
            parts.append(f"exit code {self.returncode}")
        if self.stdout.strip():
            parts.append(f"stdout:\n{self.stdout.rstrip()}")
        if self.stderr.strip():
            parts.append(f"stderr:\n{self.stderr.rstrip()}")
        return "\n".join(parts)
