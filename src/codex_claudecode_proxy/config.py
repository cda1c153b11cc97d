"""Installer configuration and resolved installation paths."""

from __future__ import annotations

import getpass
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

DEFAULT_PORT = 8317
PORT_SCAN_ATTEMPTS = 20
UPSTREAM_MODEL = "gpt-5.3-codex"
MIN_PROXY_VERSION = (6, 6, 0)
RELEASE_URL = "https://api.github.com/repos/router-for-me/CLIProxyAPI/releases/latest"
AUTH_TOKEN_PLACEHOLDER = "cli-proxy-api-local"

ENV_PREFIX = "CODEX_CLAUDECODE_PROXY_"


def _parse_bool(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclass(frozen=True)
class TierRoute:
    """One model-routing rule: a tier selector rewritten to an upstream model."""

    tier: str
    selector: str
    upstream: str
    effort: str
    settings_key: str


DEFAULT_ROUTES: tuple[TierRoute, ...] = (
    TierRoute("opus", "codex-opus", UPSTREAM_MODEL, "xhigh", "ANTHROPIC_DEFAULT_OPUS_MODEL"),
    TierRoute("sonnet", "codex-sonnet", UPSTREAM_MODEL, "high", "ANTHROPIC_DEFAULT_SONNET_MODEL"),
    TierRoute("haiku", "codex-haiku", UPSTREAM_MODEL, "medium", "ANTHROPIC_DEFAULT_HAIKU_MODEL"),
)


@dataclass(frozen=True)
class InstallerConfig:
    """Everything one invocation needs, resolved once and passed around."""

    home: Path
    username: str
    uid: int
    system: str
    machine: str

    default_port: int = DEFAULT_PORT
    port_scan_attempts: int = PORT_SCAN_ATTEMPTS
    routes: tuple[TierRoute, ...] = DEFAULT_ROUTES
    release_url: str = RELEASE_URL
    min_proxy_version: tuple[int, int, int] = MIN_PROXY_VERSION

    force_update: bool = False
    skip_update: bool = False
    verbose: bool = False

    health_timeout_s: float = 10.0
    health_interval_s: float = 0.25
    verify_attempts: int = 6
    verify_backoff_s: float = 1.0
    version_timeout_s: float = 5.0

    @property
    def is_macos(self) -> bool:
        return self.system == "Darwin"


@dataclass(frozen=True)
class InstallTarget:
    """Filesystem paths and launchd identifiers for one installation."""

    install_dir: Path
    auth_dir: Path
    config_file: Path
    sync_script: Path
    mirror_file: Path
    proxy_log: Path
    sync_log: Path
    proxy_bin: Path
    launch_agents_dir: Path
    label_proxy: str
    label_sync: str
    plist_proxy: Path
    plist_sync: Path
    codex_auth: Path
    claude_settings: Path

    @property
    def descriptors(self) -> tuple[Path, Path]:
        return (self.plist_proxy, self.plist_sync)

    @property
    def labels(self) -> tuple[str, str]:
        return (self.label_proxy, self.label_sync)


def _current_username(env: Mapping[str, str]) -> str:
    # $USER first so LaunchAgent labels match what the shell sees.
    user = (env.get("USER") or "").strip()
    if user:
        return user
    return getpass.getuser()


def _current_uid() -> int:
    getuid = getattr(os, "getuid", None)
    return getuid() if getuid else 0


def load_installer_config(
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
    **overrides: Any,
) -> InstallerConfig:
    """Resolve installer config from host facts + environment + overrides."""
    env_map = env if env is not None else os.environ
    values: dict[str, Any] = {
        "home": Path(home) if home is not None else Path.home(),
        "username": _current_username(env_map),
        "uid": _current_uid(),
        "system": platform.system(),
        "machine": platform.machine(),
    }

    force = _parse_bool(env_map.get(ENV_PREFIX + "FORCE_UPDATE"))
    if force is not None:
        values["force_update"] = force
    skip = _parse_bool(env_map.get(ENV_PREFIX + "SKIP_UPDATE"))
    if skip is not None:
        values["skip_update"] = skip
    verbose = _parse_bool(env_map.get(ENV_PREFIX + "VERBOSE"))
    if verbose is not None:
        values["verbose"] = verbose

    values.update(overrides)
    cfg = InstallerConfig(**values)

    if not 1 <= cfg.default_port <= 65535:
        raise ValueError(f"Invalid default port: {cfg.default_port}")
    if cfg.port_scan_attempts < 0:
        raise ValueError(f"Invalid port scan attempts: {cfg.port_scan_attempts}")
    return cfg


def resolve_target(cfg: InstallerConfig) -> InstallTarget:
    """Derive every path of the installation from home + username."""
    home = cfg.home
    install_dir = home / ".cli-proxy-api"
    auth_dir = install_dir / "auths"
    launch_agents = home / "Library" / "LaunchAgents"
    label_proxy = f"com.{cfg.username}.cli-proxy-api"
    label_sync = f"com.{cfg.username}.cli-proxy-api-token-sync"
    return InstallTarget(
        install_dir=install_dir,
        auth_dir=auth_dir,
        config_file=install_dir / "config.yaml",
        sync_script=install_dir / "sync-codex-token.sh",
        mirror_file=auth_dir / "codex-from-codex-cli.json",
        proxy_log=install_dir / "cli-proxy-api.log",
        sync_log=install_dir / "token-sync.log",
        proxy_bin=home / ".local" / "bin" / "cli-proxy-api",
        launch_agents_dir=launch_agents,
        label_proxy=label_proxy,
        label_sync=label_sync,
        plist_proxy=launch_agents / f"{label_proxy}.plist",
        plist_sync=launch_agents / f"{label_sync}.plist",
        codex_auth=home / ".codex" / "auth.json",
        claude_settings=home / ".claude" / "settings.json",
    )
