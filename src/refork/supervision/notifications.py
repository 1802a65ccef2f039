"""Inputs to the control loop.

Everything the monitor reacts to arrives as one of these values, whether
it came from a child's datagram, ``waitpid`` or a signal.  Backends
produce them from ``poll()``; the loop dispatches them in order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from refork.supervision.models import ChildKind


class ControlSignal(str, Enum):
    """Process-level requests delivered to the monitor."""

    REFORK = "refork"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class ChildSpawned:
    """A child exists and knows its pid; it has not run its hook yet."""

    spawn_id: int
    pid: int
    kind: ChildKind


@dataclass(frozen=True)
class ChildReady:
    """A child ran its post-fork hook and is ready."""

    spawn_id: int
    pid: int
    kind: ChildKind


@dataclass(frozen=True)
class RequestsServed:
    """A worker's running total of served requests."""

    pid: int
    nr: int
    generation: int
    count: int


@dataclass(frozen=True)
class ForkUnsafe:
    """A child declared its process state unsafe to duplicate."""

    pid: int


@dataclass(frozen=True)
class ChildExited:
    """A child was reaped.  ``status`` is None when it could not be collected."""

    pid: int
    status: int | None = None


@dataclass(frozen=True)
class SignalReceived:
    signal: ControlSignal
    signame: str = ""


Notification = ChildSpawned | ChildReady | RequestsServed | ForkUnsafe | ChildExited | SignalReceived


__all__ = [
    "ControlSignal",
    "ChildSpawned",
    "ChildReady",
    "RequestsServed",
    "ForkUnsafe",
    "ChildExited",
    "SignalReceived",
    "Notification",
]
