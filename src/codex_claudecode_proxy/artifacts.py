"""Renderers for every file the installer generates.

Pure functions: parameters in, file contents out. Nothing here touches the
filesystem or the network.
"""

from __future__ import annotations

import plistlib
from pathlib import Path
from typing import Iterable

import yaml

from .config import TierRoute

CODEX_PROTOCOL = "codex"
FALLBACK_SELECTOR = "gpt-*"
FALLBACK_EFFORT = "xhigh"
MIRROR_FIELDS = (
    "access_token",
    "account_id",
    "disabled",
    "email",
    "expired",
    "id_token",
    "last_refresh",
    "refresh_token",
    "type",
)


def _override_rule(selector: str, effort: str) -> dict:
    return {
        "models": [{"name": selector, "protocol": CODEX_PROTOCOL}],
        "params": {"reasoning.effort": effort},
    }


def build_proxy_config(port: int, routes: Iterable[TierRoute], auth_dir: str = "~/.cli-proxy-api/auths") -> dict:
    """Build the proxy config document as a mapping.

    Override rules are emitted in route order followed by the wildcard
    fallback; the proxy applies the first rule that matches.
    """
    if not isinstance(port, int) or isinstance(port, bool) or not 1 <= port <= 65535:
        raise ValueError(f"Invalid listen port: {port!r}")

    routes = list(routes)
    aliases = [{"name": route.upstream, "alias": route.selector} for route in routes]
    overrides = [_override_rule(route.selector, route.effort) for route in routes]
    overrides.append(_override_rule(FALLBACK_SELECTOR, FALLBACK_EFFORT))

    return {
        "port": port,
        "auth-dir": auth_dir,
        "request-retry": 3,
        "max-retry-interval": 30,
        "streaming": {
            "keepalive-seconds": 15,
            "bootstrap-retries": 1,
        },
        "oauth-model-alias": {CODEX_PROTOCOL: aliases},
        "payload": {"override": overrides},
    }


def render_proxy_config(port: int, routes: Iterable[TierRoute], auth_dir: str = "~/.cli-proxy-api/auths") -> str:
    """Render config.yaml for the proxy binary."""
    document = build_proxy_config(port, routes, auth_dir=auth_dir)
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def render_token_sync_script(source: Path, destination: Path) -> str:
    """Render the bash script that mirrors Codex CLI tokens for the proxy.

    The first two positional arguments override the source and destination,
    which is how the LaunchAgent and the one-shot install run share it.
    """
    return f"""#!/usr/bin/env bash
set -euo pipefail

SRC="${{1:-{source}}}"
DST="${{2:-{destination}}}"

if [[ ! -f "${{SRC}}" ]]; then
  echo "missing ${{SRC}} (Codex CLI login required)" >&2
  exit 1
fi

extract() {{
  plutil -extract "$1" raw -o - "${{SRC}}" 2>/dev/null || true
}}

access_token="$(extract tokens.access_token)"
if [[ -z "${{access_token}}" ]]; then
  echo "tokens.access_token missing in ${{SRC}}" >&2
  exit 1
fi

id_token="$(extract tokens.id_token)"
refresh_token="$(extract tokens.refresh_token)"
account_id="$(extract tokens.account_id)"
last_refresh="$(extract last_refresh)"

mkdir -p "$(dirname "${{DST}}")"

umask 077
cat > "${{DST}}.tmp" <<JSON
{{
  "access_token": "${{access_token}}",
  "account_id": "${{account_id}}",
  "disabled": false,
  "email": "",
  "expired": "",
  "id_token": "${{id_token}}",
  "last_refresh": "${{last_refresh}}",
  "refresh_token": "${{refresh_token}}",
  "type": "codex"
}}
JSON

mv "${{DST}}.tmp" "${{DST}}"
chmod 600 "${{DST}}"
"""


def _render_plist(payload: dict) -> str:
    return plistlib.dumps(payload, fmt=plistlib.FMT_XML, sort_keys=False).decode("utf-8")


def render_proxy_plist(label: str, proxy_bin: Path, config_file: Path, home: Path, log_file: Path) -> str:
    """LaunchAgent that keeps the proxy binary running."""
    return _render_plist(
        {
            "Label": label,
            "ProgramArguments": [str(proxy_bin), "--config", str(config_file)],
            "RunAtLoad": True,
            "KeepAlive": True,
            "WorkingDirectory": str(home),
            "StandardOutPath": str(log_file),
            "StandardErrorPath": str(log_file),
        }
    )


def render_sync_plist(label: str, sync_script: Path, watch_path: Path, log_file: Path) -> str:
    """LaunchAgent that re-runs the token sync whenever the credential changes."""
    return _render_plist(
        {
            "Label": label,
            "ProgramArguments": ["/bin/bash", str(sync_script)],
            "RunAtLoad": True,
            "WatchPaths": [str(watch_path)],
            "StandardOutPath": str(log_file),
            "StandardErrorPath": str(log_file),
        }
    )
