"""Key-level patching of Claude Code's ``settings.json``.

The document is treated as an opaque mapping. Only a handful of keys under
``env`` (plus the top-level ``model`` override) are touched; everything else
is written back exactly as it was read.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from .config import AUTH_TOKEN_PLACEHOLDER, TierRoute
from .errors import SettingsError
from .fsops import backup_file, write_file_atomic

logger = logging.getLogger(__name__)

SETTINGS_MODE = 0o600
ENV_KEY = "env"
BASE_URL_KEY = "ANTHROPIC_BASE_URL"
AUTH_TOKEN_KEY = "ANTHROPIC_AUTH_TOKEN"

# Global model overrides would pin every tier to one model.
GLOBAL_MODEL_KEY = "model"
GLOBAL_MODEL_ENV_KEYS = ("ANTHROPIC_MODEL", "ANTHROPIC_SMALL_FAST_MODEL")

# Raised to at least these values, never lowered.
ENV_MINIMUMS: dict[str, int] = {
    "API_TIMEOUT_MS": 600000,
    "BASH_DEFAULT_TIMEOUT_MS": 300000,
    "BASH_MAX_TIMEOUT_MS": 1200000,
    "MCP_TIMEOUT": 60000,
    "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC": 1,
}


def owned_env_keys(routes: Iterable[TierRoute]) -> list[str]:
    """Identity keys this installer sets unconditionally."""
    return [BASE_URL_KEY, AUTH_TOKEN_KEY, *(route.settings_key for route in routes)]


def _parse_number(value: object) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def read_settings(path: Path) -> dict:
    """Parse the settings document; malformed content is fatal, never repaired."""
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise SettingsError(f"failed to read {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise SettingsError(f"failed to parse JSON: {path} (not valid UTF-8: {exc})") from exc

    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"failed to parse JSON: {path} ({exc})") from exc
    if not isinstance(data, dict):
        raise SettingsError(f"expected a JSON object at top level: {path}")
    return data


def write_settings(path: Path, data: dict) -> None:
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    write_file_atomic(path, content, mode=SETTINGS_MODE)


def _env_section(data: dict) -> dict:
    env = data.get(ENV_KEY)
    if not isinstance(env, dict):
        env = {}
        data[ENV_KEY] = env
    return env


def raise_minimums(env: dict, minimums: dict[str, int] = ENV_MINIMUMS) -> list[str]:
    """Raise each minimum key in place; returns the keys that changed."""
    changed: list[str] = []
    for key, minimum in minimums.items():
        current = _parse_number(env.get(key)) if key in env else None
        if current is not None and current >= minimum:
            continue
        env[key] = str(minimum)
        changed.append(key)
    return changed


def merge_proxy_settings(data: dict, port: int, routes: Iterable[TierRoute]) -> dict:
    """Apply the installer's keys to an already parsed settings mapping."""
    routes = list(routes)
    data.pop(GLOBAL_MODEL_KEY, None)
    env = _env_section(data)
    for key in GLOBAL_MODEL_ENV_KEYS:
        env.pop(key, None)

    raise_minimums(env)

    # Identity keys are re-appended so repeated installs serialize identically.
    values = {
        BASE_URL_KEY: f"http://127.0.0.1:{port}",
        AUTH_TOKEN_KEY: AUTH_TOKEN_PLACEHOLDER,
    }
    for route in routes:
        values[route.settings_key] = route.selector
    for key, value in values.items():
        env.pop(key, None)
        env[key] = value
    return data


def strip_proxy_settings(data: dict, routes: Iterable[TierRoute], keep_minimums: bool = False) -> bool:
    """Remove the installer's keys from a parsed mapping. Returns True if changed.

    Minimum keys are only removed while they still hold the installer's own
    value, so a user's stricter setting survives uninstall.
    """
    env = data.get(ENV_KEY)
    if not isinstance(env, dict):
        return False

    changed = False
    for key in owned_env_keys(routes):
        if key in env:
            del env[key]
            changed = True

    if not keep_minimums:
        for key, minimum in ENV_MINIMUMS.items():
            if key in env and str(env[key]) == str(minimum):
                del env[key]
                changed = True

    if changed and not env:
        del data[ENV_KEY]
    return changed


def apply_proxy_settings(path: Path, port: int, routes: Iterable[TierRoute]) -> Optional[Path]:
    """Point Claude Code at the local proxy. Returns the backup path, if any."""
    settings_path = Path(path)
    backup = None
    if settings_path.exists():
        backup = backup_file(settings_path)
        data = read_settings(settings_path)
    else:
        write_settings(settings_path, {})
        data = {}

    merge_proxy_settings(data, port, routes)
    write_settings(settings_path, data)
    logger.debug("Updated %s", settings_path)
    return backup


def remove_proxy_settings(path: Path, routes: Iterable[TierRoute], keep_minimums: bool = False) -> Optional[Path]:
    """Undo ``apply_proxy_settings``; a no-op when nothing owned is present."""
    settings_path = Path(path)
    if not settings_path.exists():
        return None

    data = read_settings(settings_path)
    if not strip_proxy_settings(data, routes, keep_minimums=keep_minimums):
        return None

    backup = backup_file(settings_path)
    write_settings(settings_path, data)
    logger.debug("Removed proxy keys from %s", settings_path)
    return backup
