"""External process gateway: shell-outs, launchctl, and the proxy binary release.

The reconciler only talks to the host through ``CommandRunner.run`` so tests
can substitute a recording stub.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import tarfile
import tempfile
from dataclasses import dataclass
from http.client import HTTPException
from pathlib import Path
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .config import InstallerConfig, InstallTarget
from .errors import CommandError, DownloadError, UnsupportedEnvironmentError
from .fsops import ensure_dir, find_file_recursive, write_file_atomic

logger = logging.getLogger(__name__)

USER_AGENT = "codex-claudecode-proxy"
RELEASE_TIMEOUT_S = 30
DOWNLOAD_TIMEOUT_S = 300
BINARY_NAMES = ("cli-proxy-api", "CLIProxyAPI")

_VERSION_PATTERNS = (
    re.compile(r"version[:\s]+v?(\d+)\.(\d+)\.(\d+)", re.IGNORECASE),
    re.compile(r"\bv?(\d+)\.(\d+)\.(\d+)\b"),
)


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Run host commands, capturing output.

    ``tolerant=True`` turns a nonzero exit (or a missing executable, or a
    timeout) into a returned result instead of a ``CommandError``.
    """

    def __init__(self, timeout_s: float = 120.0):
        self.timeout_s = timeout_s

    def run(
        self,
        name: str,
        args: list[str] | tuple[str, ...] = (),
        *,
        tolerant: bool = False,
        timeout_s: Optional[float] = None,
    ) -> CommandResult:
        command = [name, *args]
        logger.debug("Running: %s", " ".join(command))
        try:
            proc = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout_s if timeout_s is not None else self.timeout_s,
            )
            result = CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")
        except FileNotFoundError as exc:
            result = CommandResult(127, "", str(exc))
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(124, _as_text(exc.stdout), _as_text(exc.stderr) or "timed out")

        if not result.ok and not tolerant:
            raise CommandError(command, result.returncode, result.stdout, result.stderr)
        return result


def _as_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


# ---------------------------------------------------------------------------
# launchctl
# ---------------------------------------------------------------------------


def _domain(uid: int) -> str:
    return f"gui/{uid}"


def launchctl_bootout(runner: CommandRunner, uid: int, label: str) -> CommandResult:
    # "Not loaded" is a valid prior state, so this never fails.
    return runner.run("launchctl", ["bootout", f"{_domain(uid)}/{label}"], tolerant=True)


def launchctl_bootstrap(runner: CommandRunner, uid: int, plist: Path) -> CommandResult:
    return runner.run("launchctl", ["bootstrap", _domain(uid), str(plist)], tolerant=True)


def launchctl_kickstart(runner: CommandRunner, uid: int, label: str) -> CommandResult:
    return runner.run("launchctl", ["kickstart", "-k", f"{_domain(uid)}/{label}"], tolerant=True)


def launchctl_is_loaded(runner: CommandRunner, uid: int, label: str) -> bool:
    return runner.run("launchctl", ["print", f"{_domain(uid)}/{label}"], tolerant=True).ok


def register_service(runner: CommandRunner, uid: int, label: str, plist: Path) -> None:
    """(Re)bootstrap a LaunchAgent and kick-start it."""
    launchctl_bootstrap(runner, uid, plist)
    launchctl_kickstart(runner, uid, label)


# ---------------------------------------------------------------------------
# Proxy binary
# ---------------------------------------------------------------------------


def parse_version(text: str) -> Optional[tuple[int, int, int]]:
    """Extract the first semantic version from a binary's self-report."""
    for pattern in _VERSION_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return (int(match.group(1)), int(match.group(2)), int(match.group(3)))
    return None


def detect_binary_version(
    runner: CommandRunner, proxy_bin: Path, timeout_s: float = 5.0
) -> Optional[tuple[int, int, int]]:
    result = runner.run(str(proxy_bin), ["--version"], tolerant=True, timeout_s=timeout_s)
    return parse_version(f"{result.stdout}\n{result.stderr}")


def release_arch(machine: str) -> str:
    """Map ``platform.machine()`` to a release asset architecture."""
    value = (machine or "").strip().lower()
    if value in {"arm64", "aarch64"}:
        return "arm64"
    if value in {"x86_64", "amd64", "x64"}:
        return "amd64"
    raise UnsupportedEnvironmentError(f"unsupported architecture: {machine or 'unknown'}")


def _request(url: str, accept: Optional[str] = None) -> Request:
    headers = {"User-Agent": USER_AGENT}
    if accept:
        headers["Accept"] = accept
    return Request(url, headers=headers)


def fetch_release(url: str) -> dict:
    """Fetch release metadata (GitHub releases API shape)."""
    try:
        with urlopen(_request(url, "application/vnd.github+json"), timeout=RELEASE_TIMEOUT_S) as resp:  # noqa: S310
            payload = json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        raise DownloadError(f"HTTP {exc.code} {exc.reason} ({url})") from exc
    except (URLError, HTTPException, OSError, ValueError) as exc:
        raise DownloadError(f"failed to fetch release metadata ({url}): {exc}") from exc
    if not isinstance(payload, dict):
        raise DownloadError(f"unexpected release metadata from {url}")
    return payload


def find_release_asset(release: dict, arch: str) -> dict:
    suffix = f"darwin_{arch}.tar.gz"
    for asset in release.get("assets") or []:
        if not isinstance(asset, dict):
            continue
        name = asset.get("name")
        if isinstance(name, str) and suffix in name and asset.get("browser_download_url"):
            return asset
    raise DownloadError(f"could not find release asset containing: {suffix}")


def download_to_file(url: str, destination: Path) -> None:
    try:
        with urlopen(_request(url), timeout=DOWNLOAD_TIMEOUT_S) as resp:  # noqa: S310
            data = resp.read()
    except HTTPError as exc:
        raise DownloadError(f"download failed: HTTP {exc.code} {exc.reason}") from exc
    except (URLError, HTTPException, OSError) as exc:
        raise DownloadError(f"download failed ({url}): {exc}") from exc
    write_file_atomic(destination, data)


def _extract_tarball(tarball: Path, into: Path) -> None:
    try:
        with tarfile.open(tarball, "r:gz") as tar:
            tar.extractall(into, filter="data")
    except (tarfile.TarError, OSError) as exc:
        raise DownloadError(f"failed to extract {tarball.name}: {exc}") from exc


def download_proxy_binary(cfg: InstallerConfig, target: InstallTarget) -> str:
    """Download the latest release for this host and install it atomically.

    Returns the release tag (or "latest" when the feed has none).
    """
    arch = release_arch(cfg.machine)

    logger.info("Downloading CLIProxyAPI release from GitHub...")
    release = fetch_release(cfg.release_url)
    asset = find_release_asset(release, arch)

    ensure_dir(target.proxy_bin.parent)
    with tempfile.TemporaryDirectory(prefix="codex-claudecode-proxy-") as tmp:
        tmp_dir = Path(tmp)
        tarball = tmp_dir / "cli-proxy-api.tar.gz"
        download_to_file(asset["browser_download_url"], tarball)

        logger.info("Extracting %s...", asset.get("name", tarball.name))
        extract_dir = tmp_dir / "extract"
        extract_dir.mkdir()
        _extract_tarball(tarball, extract_dir)

        found = find_file_recursive(extract_dir, BINARY_NAMES)
        if found is None:
            raise DownloadError("failed to locate extracted binary")
        write_file_atomic(target.proxy_bin, found.read_bytes(), mode=0o755)

    logger.info("Installed: %s", target.proxy_bin)
    return str(release.get("tag_name") or "latest")


def ensure_proxy_binary(cfg: InstallerConfig, target: InstallTarget, runner: CommandRunner) -> str:
    """Make sure a recent enough proxy binary is installed.

    Returns one of "downloaded", "updated", "kept", "kept-unknown-version",
    "kept-pinned".
    """
    if not target.proxy_bin.exists():
        download_proxy_binary(cfg, target)
        return "downloaded"

    if cfg.force_update:
        logger.info("Forced update requested; replacing %s", target.proxy_bin)
        download_proxy_binary(cfg, target)
        return "updated"

    version = detect_binary_version(runner, target.proxy_bin, timeout_s=cfg.version_timeout_s)
    if version is None:
        logger.info("CLIProxyAPI already installed (version unknown, leaving as is): %s", target.proxy_bin)
        return "kept-unknown-version"

    pretty = ".".join(str(part) for part in version)
    if version >= tuple(cfg.min_proxy_version):
        logger.info("CLIProxyAPI %s already installed: %s", pretty, target.proxy_bin)
        return "kept"

    minimum = ".".join(str(part) for part in cfg.min_proxy_version)
    if cfg.skip_update:
        logger.warning("CLIProxyAPI %s is older than %s but updates are pinned off", pretty, minimum)
        return "kept-pinned"

    logger.info("CLIProxyAPI %s is older than %s; updating", pretty, minimum)
    download_proxy_binary(cfg, target)
    return "updated"
