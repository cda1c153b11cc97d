"""CLI entry point for codex-claudecode-proxy."""

from __future__ import annotations

import argparse
import logging
import sys

from .config import load_installer_config
from .errors import InstallerError

PROG = "codex-claudecode-proxy"
LOG_FORMAT = f"[{PROG}] %(message)s"

COMMANDS = {
    "install": "Install + configure + start (default)",
    "start": "Start the proxy LaunchAgents",
    "stop": "Stop the proxy + token sync LaunchAgents",
    "status": "Show health and LaunchAgent state",
    "uninstall": "Remove LaunchAgents + Claude Code settings keys (keeps binary and config)",
    "purge": "uninstall, then delete ~/.cli-proxy-api and the proxy binary",
    "help": "Show this help",
}

EPILOG = """Examples:
  npx -y codex-claudecode-proxy@latest
  codex-claudecode-proxy status
"""


class _Parser(argparse.ArgumentParser):
    """Usage errors exit 1, not argparse's default 2 (reserved for cancel)."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        sys.exit(1)


def _add_common_flags(parser: argparse.ArgumentParser, top_level: bool) -> None:
    default = False if top_level else argparse.SUPPRESS
    parser.add_argument("--yes", "-y", action="store_true", default=default, help=argparse.SUPPRESS)
    parser.add_argument("--verbose", "-v", action="store_true", default=default, help="Enable debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog=PROG,
        description="Route Claude Code through a local CLIProxyAPI using your Codex CLI login",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _add_common_flags(parser, top_level=True)
    sub = parser.add_subparsers(dest="command", metavar="command", parser_class=_Parser)
    for name, help_text in COMMANDS.items():
        p_cmd = sub.add_parser(name, help=help_text, description=help_text)
        _add_common_flags(p_cmd, top_level=False)
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stdout,
    )


def fail(message: str, code: int = 1) -> None:
    print(f"[{PROG}][FAIL] {message}", file=sys.stderr)
    sys.exit(code)


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "install"

    if command == "help":
        parser.print_help()
        sys.exit(0)

    cfg = load_installer_config()
    _configure_logging(args.verbose or cfg.verbose)

    try:
        if command == "install":
            _run_install(cfg)
        elif command == "start":
            _run_start(cfg)
        elif command == "stop":
            _run_stop(cfg)
        elif command == "status":
            _run_status(cfg)
        elif command == "uninstall":
            _run_uninstall(cfg)
        elif command == "purge":
            _run_purge(cfg)
        else:
            parser.print_help(sys.stderr)
            sys.exit(1)
    except InstallerError as exc:
        fail(str(exc))
    except (OSError, ValueError) as exc:
        fail(str(exc))
    except KeyboardInterrupt:
        fail("cancelled", code=2)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _run_install(cfg) -> None:
    from .reconciler import install

    result = install(cfg)

    print()
    print(f"[{PROG}] All done.")
    print(f"[{PROG}] - Proxy: {result['base_url']}")
    print(f"[{PROG}] - Config: {result['config_file']}")
    print(f"[{PROG}] - Claude settings: {result['settings_path']}")
    if result.get("settings_backup"):
        print(f"[{PROG}] - Settings backup: {result['settings_backup']}")
    print(f"[{PROG}] - Verified tiers: {', '.join(result['verified'])}")
    print(f"[{PROG}] - Next: run 'claude'")


def _run_start(cfg) -> None:
    from .reconciler import start

    result = start(cfg)
    print(f"[{PROG}] proxy started ({result['base_url']})")


def _run_stop(cfg) -> None:
    from .reconciler import stop

    stop(cfg)
    print(f"[{PROG}] proxy stopped (launchagents unloaded)")


def _run_status(cfg) -> None:
    from .reconciler import status

    result = status(cfg)
    health = "OK" if result["healthy"] else "NOT RUNNING"
    print(f"[{PROG}] healthcheck: {health} ({result['url']})")
    services = result.get("services")
    if services is not None:
        print(f"[{PROG}] launchctl proxy job: {'loaded' if services['proxy'] else 'not loaded'}")
        print(f"[{PROG}] launchctl token-sync job: {'loaded' if services['token-sync'] else 'not loaded'}")


def _run_uninstall(cfg) -> None:
    from .reconciler import uninstall

    result = uninstall(cfg)
    _print_removal(result)
    print(f"[{PROG}] uninstall completed (binary/config left in place)")


def _run_purge(cfg) -> None:
    from .reconciler import purge

    result = purge(cfg)
    _print_removal(result)
    print(f"[{PROG}] purge completed")


def _print_removal(result: dict) -> None:
    for path in result.get("removed", []):
        print(f"[{PROG}]   [-] {path}")
    if result.get("settings_backup"):
        print(f"[{PROG}]   Settings backup: {result['settings_backup']}")


if __name__ == "__main__":
    main()
