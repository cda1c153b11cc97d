"""HTTP probes against the local proxy, plus loopback port helpers."""

from __future__ import annotations

import json
import logging
import socket
import time
from http.client import HTTPException
from typing import Callable, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
HEALTH_PATH = "/v1/models"
RESPONSES_PATH = "/v1/responses"
HEALTH_TIMEOUT_S = 2.0
VERIFY_TIMEOUT_S = 20.0
VERIFY_PROMPT = "say pong"


def base_url(port: int) -> str:
    return f"http://{LOOPBACK}:{port}"


def poll_until(
    predicate: Callable[[], bool],
    *,
    interval_s: float,
    timeout_s: Optional[float] = None,
    attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Call ``predicate`` until it returns True or the budget runs out.

    The budget is a total duration (``timeout_s``), an attempt count
    (``attempts``), or both; whichever is exhausted first ends the loop.
    """
    if timeout_s is None and attempts is None:
        raise ValueError("poll_until needs timeout_s or attempts")

    deadline = clock() + timeout_s if timeout_s is not None else None
    tries = 0
    while True:
        tries += 1
        if predicate():
            return True
        if attempts is not None and tries >= attempts:
            return False
        if deadline is not None and clock() + interval_s > deadline:
            return False
        sleep(interval_s)


def proxy_healthcheck(port: int, timeout_s: float = HEALTH_TIMEOUT_S) -> bool:
    """True when the proxy answers its model listing with a 2xx."""
    try:
        with urlopen(f"{base_url(port)}{HEALTH_PATH}", timeout=timeout_s) as resp:  # noqa: S310
            return 200 <= resp.status < 300
    except (URLError, HTTPException, OSError, ValueError):
        return False


def request_reasoning_effort(port: int, model: str, timeout_s: float = VERIFY_TIMEOUT_S) -> Optional[str]:
    """Send one synthetic request and return ``reasoning.effort`` from the reply."""
    body = json.dumps({"model": model, "input": VERIFY_PROMPT}).encode("utf-8")
    req = Request(
        f"{base_url(port)}{RESPONSES_PATH}",
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout_s) as resp:  # noqa: S310
            payload = json.loads(resp.read().decode("utf-8"))
    except (URLError, HTTPException, OSError, ValueError) as exc:
        logger.debug("Effort probe for %s failed: %s", model, exc)
        return None

    reasoning = payload.get("reasoning") if isinstance(payload, dict) else None
    if not isinstance(reasoning, dict):
        return None
    effort = reasoning.get("effort")
    return effort if isinstance(effort, str) else None


def effort_matches(port: int, model: str, expected: str, timeout_s: float = VERIFY_TIMEOUT_S) -> bool:
    effort = request_reasoning_effort(port, model, timeout_s=timeout_s)
    if effort != expected:
        logger.debug("Effort probe for %s: got %r, want %r", model, effort, expected)
    return effort == expected


def wait_for_healthy(
    port: int,
    timeout_s: float = 10.0,
    interval_s: float = 0.25,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    return poll_until(lambda: proxy_healthcheck(port), interval_s=interval_s, timeout_s=timeout_s, sleep=sleep)


def verify_reasoning_effort(
    port: int,
    model: str,
    expected: str,
    attempts: int = 6,
    backoff_s: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    return poll_until(
        lambda: effort_matches(port, model, expected),
        interval_s=backoff_s,
        attempts=attempts,
        sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Loopback ports
# ---------------------------------------------------------------------------


def is_port_free(port: int, host: str = LOOPBACK) -> bool:
    if not 1 <= port <= 65535:
        return False
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def ephemeral_port(host: str = LOOPBACK) -> int:
    """Ask the OS for a currently unused port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]
