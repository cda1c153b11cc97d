"""Shared fixtures: a fake proxy HTTP server and a recording command runner.

Nothing here touches the real launchd, the real home directory, or the
network beyond 127.0.0.1.
"""

from __future__ import annotations

import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from codex_claudecode_proxy.config import load_installer_config
from codex_claudecode_proxy.errors import CommandError
from codex_claudecode_proxy.gateway import CommandResult

TIER_EFFORTS = {
    "codex-opus": "xhigh",
    "codex-sonnet": "high",
    "codex-haiku": "medium",
}


class FakeProxy:
    """Answers the two endpoints the installer probes."""

    def __init__(self):
        self.healthy = True
        self.efforts = dict(TIER_EFFORTS)
        self.requests: list[tuple[str, str, object]] = []
        self._server = ThreadingHTTPServer(("127.0.0.1", 0), self._handler_class())
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    def _handler_class(self):
        fake = self

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, format, *args):  # noqa: A002
                pass

            def _send_json(self, status: int, payload: object) -> None:
                body = json.dumps(payload).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def do_GET(self):
                fake.requests.append(("GET", self.path, None))
                if self.path == "/v1/models" and fake.healthy:
                    self._send_json(200, {"data": []})
                    return
                self._send_json(503 if self.path == "/v1/models" else 404, {})

            def do_POST(self):
                length = int(self.headers.get("Content-Length") or 0)
                raw = self.rfile.read(length)
                try:
                    body = json.loads(raw.decode("utf-8"))
                except ValueError:
                    body = None
                fake.requests.append(("POST", self.path, body))
                if self.path != "/v1/responses" or not isinstance(body, dict):
                    self._send_json(404, {})
                    return
                effort = fake.efforts.get(body.get("model"))
                self._send_json(200, {"model": body.get("model"), "reasoning": {"effort": effort}})

        return Handler

    def start(self) -> "FakeProxy":
        self._thread.start()
        return self

    def close(self) -> None:
        self._server.shutdown()
        self._server.server_close()


class StubRunner:
    """Records every command; answers from ``responses`` or succeeds."""

    def __init__(self):
        self.calls: list[tuple[str, list[str], bool]] = []
        self.responses: dict[str, CommandResult] = {}

    def run(self, name, args=(), *, tolerant=False, timeout_s=None):
        args = list(args)
        self.calls.append((name, args, tolerant))
        key = " ".join([name, *args])
        result = self.responses.get(key) or self.responses.get(name) or CommandResult(0, "", "")
        if not result.ok and not tolerant:
            raise CommandError([name, *args], result.returncode, result.stdout, result.stderr)
        return result

    def launchctl_calls(self) -> list[list[str]]:
        return [args for name, args, _ in self.calls if name == "launchctl"]


@pytest.fixture
def fake_proxy():
    server = FakeProxy().start()
    try:
        yield server
    finally:
        server.close()


@pytest.fixture
def banner_port():
    """A loopback listener that greets every connection with a non-HTTP banner."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(5)
    sock.settimeout(0.1)
    stopped = threading.Event()

    def serve():
        while not stopped.is_set():
            try:
                conn, _addr = sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                conn.sendall(b"SSH-2.0-OpenSSH_9.0\r\n")

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield sock.getsockname()[1]
    finally:
        stopped.set()
        thread.join(timeout=1)
        sock.close()


@pytest.fixture
def runner():
    return StubRunner()


@pytest.fixture
def home(tmp_path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def make_config(home):
    def _make(**overrides):
        values = {
            "username": "testuser",
            "uid": 501,
            "system": "Darwin",
            "machine": "arm64",
            "health_timeout_s": 1.0,
            "health_interval_s": 0.05,
            "verify_attempts": 2,
            "verify_backoff_s": 0.01,
        }
        values.update(overrides)
        return load_installer_config(env={}, home=home, **values)

    return _make


def write_codex_auth(home: Path) -> Path:
    path = home / ".codex" / "auth.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(
            {
                "tokens": {
                    "access_token": "test-access-token",
                    "id_token": "test-id-token",
                    "refresh_token": "test-refresh-token",
                    "account_id": "test-account-id",
                },
                "last_refresh": "0",
            },
            indent=2,
        ),
        encoding="utf-8",
    )
    return path


def write_stub_binary(home: Path) -> Path:
    path = home / ".local" / "bin" / "cli-proxy-api"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/usr/bin/env bash\nexit 0\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def write_proxy_config(home: Path, port: int) -> Path:
    path = home / ".cli-proxy-api" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f'port: {port}\nauth-dir: "~/.cli-proxy-api/auths"\n', encoding="utf-8")
    return path
