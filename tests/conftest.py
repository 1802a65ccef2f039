"""
Shared pytest fixtures and configuration for refork tests.

This module provides:
- Settings factory with fast, test-friendly timings
- A simulated clock and in-memory process backend
- ``Harness``: a control loop wired to both, with helpers to drive it

Usage:
    def test_something(harness):
        harness.boot()
        harness.backend.serve_requests(10)
        harness.settle()
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure refork package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from refork.core.settings import ReforkSettings
from refork.runtime.memory import MemoryBackend, SimClock
from refork.supervision.control import ControlLoop
from refork.supervision.events import EventType, MemorySink
from refork.supervision.hooks import Hooks


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)
            if not sys.platform.startswith("linux"):
                item.add_marker(pytest.mark.skip(reason="real reforking needs Linux"))

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Settings
# =============================================================================


DEFAULT_TEST_SETTINGS: dict[str, Any] = {
    "worker_processes": 2,
    "refork_after": [5, 5],
    "spawn_timeout": 5.0,
    "backoff_delay": 2.0,
    "shutdown_timeout": 3.0,
    "kill_timeout": 1.0,
    "tick_interval": 0.5,
}


@pytest.fixture
def make_settings() -> Callable[..., ReforkSettings]:
    """Factory for settings that ignore the environment and ``.env``."""

    def factory(**overrides: Any) -> ReforkSettings:
        values = dict(DEFAULT_TEST_SETTINGS)
        values.update(overrides)
        return ReforkSettings(_env_file=None, **values)

    return factory


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep REFORK_* variables from the developer's shell out of tests."""
    import os

    for key in list(os.environ):
        if key.startswith("REFORK_"):
            monkeypatch.delenv(key, raising=False)


# =============================================================================
# Simulated supervisor
# =============================================================================


class Harness:
    """A control loop on a memory backend and a simulated clock."""

    def __init__(self, settings: ReforkSettings, hooks: Hooks | None = None, **backend_options: Any):
        self.settings = settings
        self.clock = SimClock()
        self.backend = MemoryBackend(hooks=hooks, clock=self.clock, settings=settings, **backend_options)
        self.sink = MemorySink()
        self.loop = ControlLoop(settings, self.backend, sink=self.sink, clock=self.clock)
        self.probe_failures = 0
        self.watching = False

    def step(self, count: int = 1) -> None:
        for _ in range(count):
            self.loop.step()
            if self.watching and not self.loop.shutting_down and not self.backend.probe():
                self.probe_failures += 1

    def settle(self, max_steps: int = 200) -> None:
        """Step until two consecutive polls find nothing to do."""
        idle = 0
        for _ in range(max_steps):
            if self.loop.exit_code is not None:
                return
            busy = self.backend.pending > 0
            self.step()
            idle = 0 if busy else idle + 1
            if idle >= 2:
                return
        raise AssertionError("loop did not settle")

    def advance(self, seconds: float, max_steps: int = 1000) -> None:
        """Step until at least *seconds* of simulated time have passed."""
        target = self.clock.now + seconds
        for _ in range(max_steps):
            if self.clock.now >= target or self.loop.exit_code is not None:
                return
            self.step()
        raise AssertionError("simulated time did not advance")

    def boot(self) -> None:
        """Start the loop and wait for every worker slot to be ready."""
        self.loop.start()
        self.settle()
        self.watching = True

    def serve(self, requests: int) -> int:
        served = self.backend.serve_requests(requests)
        self.settle()
        return served

    def until_exit(self, max_steps: int = 1000) -> int:
        for _ in range(max_steps):
            if self.loop.exit_code is not None:
                return self.loop.exit_code
            self.step()
        raise AssertionError("loop did not exit")

    def events(self, *event_types: EventType) -> list:
        return self.sink.of_type(*event_types)

    def lines(self) -> list[str]:
        return self.sink.lines()


@pytest.fixture
def clock() -> SimClock:
    return SimClock()


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def make_harness(make_settings: Callable[..., ReforkSettings]) -> Callable[..., Harness]:
    """Factory: ``make_harness(hooks=..., policy=..., **settings_overrides)``."""

    def factory(hooks: Hooks | None = None, policy: Any = None, reforking_available: bool = True, **overrides: Any) -> Harness:
        return Harness(
            make_settings(**overrides),
            hooks=hooks,
            policy=policy,
            reforking_available=reforking_available,
        )

    return factory


@pytest.fixture
def harness(make_harness: Callable[..., Harness]) -> Harness:
    return make_harness()
