"""Install / start / stop / status / uninstall / purge.

Each operation is a straight sequence of idempotent steps. A step that fails
raises an ``InstallerError`` and leaves earlier steps in place; re-running
``install`` is the recovery path.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

import yaml

from . import artifacts, gateway, probe, settings
from .config import InstallerConfig, InstallTarget, resolve_target
from .errors import PreconditionError, VerificationError
from .fsops import ensure_dir, remove_file, remove_tree, write_file_atomic
from .gateway import CommandRunner

logger = logging.getLogger(__name__)

CONFIG_MODE = 0o644
SCRIPT_MODE = 0o755
PLIST_MODE = 0o644


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_macos(cfg: InstallerConfig) -> None:
    if not cfg.is_macos:
        raise PreconditionError(f"macOS only (LaunchAgents based install); this host is {cfg.system or 'unknown'}")


def read_configured_port(config_file: Path) -> Optional[int]:
    """Return ``port`` from an existing proxy config, or None if unusable."""
    try:
        data = yaml.safe_load(Path(config_file).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return None
    if not isinstance(data, dict):
        return None
    port = data.get("port")
    if isinstance(port, bool) or not isinstance(port, int):
        return None
    return port if 1 <= port <= 65535 else None


def resolve_port(
    cfg: InstallerConfig,
    target: InstallTarget,
    healthcheck: Callable[[int], bool] = probe.proxy_healthcheck,
    port_free: Callable[[int], bool] = probe.is_port_free,
) -> int:
    """Pick the listen port, preferring the one already configured."""
    existing = read_configured_port(target.config_file)
    if existing is not None:
        if healthcheck(existing):
            logger.debug("Reusing port %d (proxy already healthy)", existing)
            return existing
        if port_free(existing):
            logger.debug("Reusing configured port %d (free)", existing)
            return existing
        logger.info("Configured port %d is taken by something else; picking another", existing)

    for offset in range(cfg.port_scan_attempts):
        candidate = cfg.default_port + offset
        if candidate > 65535:
            break
        if port_free(candidate):
            return candidate
    return probe.ephemeral_port()


def _has_prior_install(target: InstallTarget) -> bool:
    return target.install_dir.exists() or any(path.exists() for path in target.descriptors)


def _deregister_services(cfg: InstallerConfig, target: InstallTarget, runner: CommandRunner) -> None:
    for label in target.labels:
        gateway.launchctl_bootout(runner, cfg.uid, label)


def _cleanup_prior_install(cfg: InstallerConfig, target: InstallTarget, runner: CommandRunner) -> None:
    logger.info("Cleaning up previous installation...")
    _deregister_services(cfg, target, runner)
    for descriptor in target.descriptors:
        remove_file(descriptor)
    remove_tree(target.install_dir)
    settings.remove_proxy_settings(target.claude_settings, cfg.routes, keep_minimums=True)


def _write_service_descriptors(cfg: InstallerConfig, target: InstallTarget) -> None:
    write_file_atomic(
        target.plist_sync,
        artifacts.render_sync_plist(target.label_sync, target.sync_script, target.codex_auth, target.sync_log),
        mode=PLIST_MODE,
    )
    write_file_atomic(
        target.plist_proxy,
        artifacts.render_proxy_plist(
            target.label_proxy, target.proxy_bin, target.config_file, cfg.home, target.proxy_log
        ),
        mode=PLIST_MODE,
    )


def _wait_healthy(cfg: InstallerConfig, port: int, sleep: Callable[[float], None]) -> bool:
    return probe.wait_for_healthy(
        port,
        timeout_s=cfg.health_timeout_s,
        interval_s=cfg.health_interval_s,
        sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def install(
    cfg: InstallerConfig,
    runner: Optional[CommandRunner] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Install, configure, start and verify the proxy.

    Returns a summary dict with keys: port, base_url, binary, config_file,
    proxy_log, settings_path, settings_backup, verified.
    """
    runner = runner or CommandRunner()
    target = resolve_target(cfg)

    _require_macos(cfg)
    if not target.codex_auth.exists():
        raise PreconditionError(f"missing {target.codex_auth} (Codex CLI login required)")
    if cfg.force_update or not target.proxy_bin.exists():
        gateway.release_arch(cfg.machine)

    port = resolve_port(cfg, target)
    logger.info("Using port %d", port)

    if _has_prior_install(target):
        _cleanup_prior_install(cfg, target, runner)

    for directory in (target.install_dir, target.auth_dir, target.proxy_bin.parent, target.launch_agents_dir):
        ensure_dir(directory)

    binary_action = gateway.ensure_proxy_binary(cfg, target, runner)

    logger.info("Writing config + token sync script...")
    write_file_atomic(target.config_file, artifacts.render_proxy_config(port, cfg.routes), mode=CONFIG_MODE)
    write_file_atomic(
        target.sync_script,
        artifacts.render_token_sync_script(target.codex_auth, target.mirror_file),
        mode=SCRIPT_MODE,
    )

    logger.info("Syncing token once...")
    runner.run("/bin/bash", [str(target.sync_script)])

    logger.info("Writing LaunchAgents...")
    _write_service_descriptors(cfg, target)

    logger.info("Reloading LaunchAgents...")
    _deregister_services(cfg, target, runner)
    gateway.launchctl_bootstrap(runner, cfg.uid, target.plist_sync)
    gateway.launchctl_bootstrap(runner, cfg.uid, target.plist_proxy)
    gateway.launchctl_kickstart(runner, cfg.uid, target.label_sync)
    gateway.launchctl_kickstart(runner, cfg.uid, target.label_proxy)

    if not _wait_healthy(cfg, port, sleep):
        raise VerificationError(f"proxy did not become healthy (check {target.proxy_log})")

    logger.info("Updating Claude Code settings...")
    backup = settings.apply_proxy_settings(target.claude_settings, port, cfg.routes)

    verified: list[str] = []
    for route in cfg.routes:
        logger.info("Verifying %s -> reasoning.effort=%s ...", route.selector, route.effort)
        ok = probe.verify_reasoning_effort(
            port,
            route.selector,
            route.effort,
            attempts=cfg.verify_attempts,
            backoff_s=cfg.verify_backoff_s,
            sleep=sleep,
        )
        if not ok:
            raise VerificationError(
                f"expected reasoning.effort={route.effort} for {route.selector} ({route.tier}) "
                f"but verification failed (check {target.proxy_log})"
            )
        verified.append(route.tier)

    return {
        "port": port,
        "base_url": probe.base_url(port),
        "binary": binary_action,
        "config_file": str(target.config_file),
        "proxy_log": str(target.proxy_log),
        "settings_path": str(target.claude_settings),
        "settings_backup": str(backup) if backup else None,
        "verified": verified,
    }


def start(
    cfg: InstallerConfig,
    runner: Optional[CommandRunner] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Register and kick-start both LaunchAgents, then wait for health."""
    runner = runner or CommandRunner()
    target = resolve_target(cfg)
    _require_macos(cfg)

    if target.plist_sync.exists():
        gateway.register_service(runner, cfg.uid, target.label_sync, target.plist_sync)
    if not target.plist_proxy.exists():
        raise PreconditionError(f"missing plist: {target.plist_proxy} (run install first)")
    gateway.register_service(runner, cfg.uid, target.label_proxy, target.plist_proxy)

    port = read_configured_port(target.config_file) or cfg.default_port
    if not _wait_healthy(cfg, port, sleep):
        raise VerificationError(f"proxy did not become healthy (check {target.proxy_log})")
    return {"port": port, "base_url": probe.base_url(port)}


def stop(cfg: InstallerConfig, runner: Optional[CommandRunner] = None) -> dict:
    """Unload both LaunchAgents; already-unloaded services are fine."""
    runner = runner or CommandRunner()
    target = resolve_target(cfg)
    _require_macos(cfg)
    _deregister_services(cfg, target, runner)
    return {"labels": list(target.labels)}


def status(cfg: InstallerConfig, runner: Optional[CommandRunner] = None) -> dict:
    """Report health and, on macOS, whether each LaunchAgent is loaded.

    Returns a dict with keys: port, url, healthy, services (None off macOS).
    """
    runner = runner or CommandRunner()
    target = resolve_target(cfg)
    port = read_configured_port(target.config_file) or cfg.default_port

    result: dict = {
        "port": port,
        "url": f"{probe.base_url(port)}{probe.HEALTH_PATH}",
        "healthy": probe.proxy_healthcheck(port),
        "services": None,
    }
    if cfg.is_macos:
        result["services"] = {
            "proxy": gateway.launchctl_is_loaded(runner, cfg.uid, target.label_proxy),
            "token-sync": gateway.launchctl_is_loaded(runner, cfg.uid, target.label_sync),
        }
    return result


def uninstall(cfg: InstallerConfig, runner: Optional[CommandRunner] = None) -> dict:
    """Remove registrations and settings keys; binary and config stay."""
    runner = runner or CommandRunner()
    target = resolve_target(cfg)
    _require_macos(cfg)

    _deregister_services(cfg, target, runner)
    removed = [str(path) for path in target.descriptors if remove_file(path)]
    backup = settings.remove_proxy_settings(target.claude_settings, cfg.routes)
    return {
        "removed": removed,
        "settings_path": str(target.claude_settings),
        "settings_backup": str(backup) if backup else None,
    }


def purge(cfg: InstallerConfig, runner: Optional[CommandRunner] = None) -> dict:
    """``uninstall`` plus deletion of the install directory and the binary."""
    result = uninstall(cfg, runner=runner)
    target = resolve_target(cfg)
    if remove_tree(target.install_dir):
        result["removed"].append(str(target.install_dir))
    if remove_file(target.proxy_bin):
        result["removed"].append(str(target.proxy_bin))
    return result
