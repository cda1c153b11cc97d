"""Tests for the command-line surface and exit codes."""

from __future__ import annotations

import pytest

from codex_claudecode_proxy import cli, reconciler
from codex_claudecode_proxy.errors import PreconditionError, VerificationError


def _run(argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return excinfo.value.code


def _install_summary() -> dict:
    return {
        "port": 8317,
        "base_url": "http://127.0.0.1:8317",
        "binary": "kept",
        "config_file": "/h/.cli-proxy-api/config.yaml",
        "proxy_log": "/h/.cli-proxy-api/cli-proxy-api.log",
        "settings_path": "/h/.claude/settings.json",
        "settings_backup": "/h/.claude/settings.json.backup.1",
        "verified": ["opus", "sonnet", "haiku"],
    }


class TestParser:
    def test_help_exits_zero(self, capsys):
        assert _run(["help"]) == 0
        out = capsys.readouterr().out
        for command in ("install", "start", "stop", "status", "uninstall", "purge"):
            assert command in out

    def test_dash_help_exits_zero(self, capsys):
        assert _run(["--help"]) == 0

    def test_unknown_command_exits_one(self, capsys):
        assert _run(["frobnicate"]) == 1
        assert "invalid choice" in capsys.readouterr().err

    def test_unknown_flag_exits_one(self, capsys):
        assert _run(["status", "--bogus"]) == 1

    @pytest.mark.parametrize("argv", [["--yes", "status"], ["status", "-y"], ["-v", "status", "--yes"]])
    def test_yes_flag_accepted_anywhere(self, argv, monkeypatch, capsys):
        monkeypatch.setattr(
            reconciler, "status", lambda cfg: {"port": 8317, "url": "u", "healthy": True, "services": None}
        )
        cli.main(argv)
        assert "healthcheck: OK" in capsys.readouterr().out


class TestCommands:
    def test_default_command_is_install(self, monkeypatch, capsys):
        calls = []
        monkeypatch.setattr(reconciler, "install", lambda cfg: calls.append(cfg) or _install_summary())
        cli.main([])
        out = capsys.readouterr().out
        assert len(calls) == 1
        assert "All done." in out
        assert "http://127.0.0.1:8317" in out
        assert "Settings backup: /h/.claude/settings.json.backup.1" in out
        assert "opus, sonnet, haiku" in out

    def test_failure_prints_fail_and_exits_one(self, monkeypatch, capsys):
        def boom(cfg):
            raise PreconditionError("missing ~/.codex/auth.json (Codex CLI login required)")

        monkeypatch.setattr(reconciler, "install", boom)
        assert _run(["install"]) == 1
        err = capsys.readouterr().err
        assert "[codex-claudecode-proxy][FAIL]" in err
        assert "auth.json" in err

    def test_os_error_prints_fail_and_exits_one(self, monkeypatch, capsys):
        def denied(cfg):
            raise PermissionError(13, "Permission denied", "/h/.claude/settings.json")

        monkeypatch.setattr(reconciler, "install", denied)
        assert _run(["install"]) == 1
        err = capsys.readouterr().err
        assert "[codex-claudecode-proxy][FAIL]" in err
        assert "Permission denied" in err

    def test_cancel_exits_two(self, monkeypatch, capsys):
        def interrupted(cfg):
            raise KeyboardInterrupt

        monkeypatch.setattr(reconciler, "start", interrupted)
        assert _run(["start"]) == 2
        assert "cancelled" in capsys.readouterr().err

    def test_start_failure(self, monkeypatch, capsys):
        def unhealthy(cfg):
            raise VerificationError("proxy did not become healthy")

        monkeypatch.setattr(reconciler, "start", unhealthy)
        assert _run(["start"]) == 1

    def test_status_with_services(self, monkeypatch, capsys):
        monkeypatch.setattr(
            reconciler,
            "status",
            lambda cfg: {
                "port": 8317,
                "url": "http://127.0.0.1:8317/v1/models",
                "healthy": False,
                "services": {"proxy": True, "token-sync": False},
            },
        )
        cli.main(["status"])
        out = capsys.readouterr().out
        assert "healthcheck: NOT RUNNING" in out
        assert "launchctl proxy job: loaded" in out
        assert "launchctl token-sync job: not loaded" in out

    def test_uninstall_lists_removed_paths(self, monkeypatch, capsys):
        monkeypatch.setattr(
            reconciler,
            "uninstall",
            lambda cfg: {"removed": ["/h/a.plist"], "settings_path": "/h/s.json", "settings_backup": None},
        )
        cli.main(["uninstall"])
        out = capsys.readouterr().out
        assert "[-] /h/a.plist" in out
        assert "uninstall completed" in out

    def test_purge(self, monkeypatch, capsys):
        monkeypatch.setattr(
            reconciler,
            "purge",
            lambda cfg: {"removed": ["/h/.cli-proxy-api"], "settings_path": "/h/s.json", "settings_backup": None},
        )
        cli.main(["purge"])
        assert "purge completed" in capsys.readouterr().out

    def test_stop(self, monkeypatch, capsys):
        monkeypatch.setattr(reconciler, "stop", lambda cfg: {"labels": []})
        cli.main(["stop"])
        assert "proxy stopped" in capsys.readouterr().out
