"""
Real reforking, end to end.

Starts ``python -m refork serve`` on a free localhost port with JSON
logs, drives traffic with the HTTP probe and follows the supervisor
through its structured log lines:

    boot ─► 12 requests ─► gen=1 rollout ─► SIGUSR2 ─► gen=2 rollout ─► SIGTERM ─► exit 0
"""

from __future__ import annotations

import json
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from refork.runtime.probe import probe

SRC = Path(__file__).resolve().parents[2] / "src"

HELLO_APP = '''
def application(environ, start_response):
    body = b"hello"
    start_response("200 OK", [("Content-Type", "text/plain"), ("Content-Length", str(len(body)))])
    return [body]
'''

pytestmark = pytest.mark.slow


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class LogFollower:
    """Collects JSON log lines from a process's stderr on a thread."""

    def __init__(self, stream):
        self.entries: list[dict] = []
        self.raw: list[str] = []
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._read, args=(stream,), daemon=True)
        self._thread.start()

    def _read(self, stream) -> None:
        for line in iter(stream.readline, ""):
            with self._lock:
                self.raw.append(line)
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                with self._lock:
                    self.entries.append(entry)

    def find(self, **fields) -> list[dict]:
        with self._lock:
            return [entry for entry in self.entries if all(entry.get(k) == v for k, v in fields.items())]

    def wait_for(self, timeout: float = 30.0, **fields) -> dict:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            found = self.find(**fields)
            if found:
                return found[0]
            if self.find(event="reforking_unavailable"):
                pytest.skip("child subreaper not available")
            time.sleep(0.05)
        with self._lock:
            tail = "".join(self.raw[-40:])
        raise AssertionError(f"no log entry matching {fields} within {timeout}s:\n{tail}")


def _wait_until_healthy(address: str, timeout: float = 30.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if probe(address, timeout=1.0):
            return
        time.sleep(0.1)
    raise AssertionError(f"{address} never became healthy")


@pytest.fixture
def server(tmp_path):
    (tmp_path / "hello_app.py").write_text(HELLO_APP)
    address = f"127.0.0.1:{_free_port()}"
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join([str(tmp_path), str(SRC), env.get("PYTHONPATH", "")])
    proc = subprocess.Popen(
        [
            sys.executable,
            "-m",
            "refork",
            "serve",
            "hello_app:application",
            "--workers",
            "2",
            "--listen",
            address,
            "--json-logs",
            "--refork-after",
            "5,5",
            "--spawn-timeout",
            "10",
            "--backoff-delay",
            "1",
        ],
        cwd=tmp_path,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
    )
    logs = LogFollower(proc.stderr)
    try:
        yield proc, address, logs
    finally:
        if proc.poll() is None:
            proc.send_signal(signal.SIGTERM)
            try:
                proc.wait(timeout=15)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()


def test_refork_rollout_and_shutdown(server):
    proc, address, logs = server

    logs.wait_for(event_type="worker_registered", nr=1, generation=0)
    _wait_until_healthy(address)

    for _ in range(12):
        assert probe(address, timeout=5.0)
    triggered = logs.wait_for(event_type="refork_triggered", generation=1)
    assert triggered["source"] == "condition"
    logs.wait_for(event_type="rollout_completed", generation=1)
    assert probe(address, timeout=5.0)

    proc.send_signal(signal.SIGUSR2)
    logs.wait_for(event_type="rollout_completed", generation=2)
    assert probe(address, timeout=5.0)

    proc.send_signal(signal.SIGTERM)
    assert proc.wait(timeout=30) == 0
    logs.wait_for(event_type="shutdown_completed", exit_code=0, timeout=5.0)
    assert not logs.find(event_type="fatal")
