"""Process handles and lifecycle state machines.

ARCHITECTURE
────────────
::

    ProcessHandle               ─ one OS child as seen by the monitor
      ├── kind, generation      ─ mold or worker, lineage number
      ├── spawn_id              ─ token echoed back by the child
      ├── pid                   ─ known once the child reports in
      ├── deadline              ─ spawn_timeout expiry while spawning
      └── kill_reason           ─ why the monitor signalled it, if it did
    Mold(ProcessHandle)         ─ spawning → ready → terminated | failed
    Worker(ProcessHandle)       ─ spawning → ready → terminating → reaped

State transitions are enforced via ``MOLD_VALID_TRANSITIONS`` and
``WORKER_VALID_TRANSITIONS``.  Use ``transition_to()`` on a handle, never
assign ``state`` directly.
"""

from __future__ import annotations

import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from refork.core.errors import InvalidTransitionError

if TYPE_CHECKING:
    from refork.supervision.backend import ProcessBackend


class ChildKind(str, Enum):
    """Kinds of process the monitor supervises."""

    MOLD = "mold"
    WORKER = "worker"


class MoldState(str, Enum):
    """Lifecycle of a mold process."""

    SPAWNING = "spawning"
    READY = "ready"
    TERMINATED = "terminated"
    FAILED = "failed"


class WorkerState(str, Enum):
    """Lifecycle of a worker process."""

    SPAWNING = "spawning"
    READY = "ready"
    TERMINATING = "terminating"
    REAPED = "reaped"


class ReapReason(str, Enum):
    """Why a child left the process table, as reported in ``child_reaped``."""

    TERMINATED = "terminated"      # Asked to exit, did so
    CRASHED = "crashed"            # Was ready, exited on its own
    SPAWN_FAILED = "spawn_failed"  # Exited before reporting ready
    TIMEOUT = "timeout"            # Killed after spawn_timeout
    CORRUPTED = "corrupted"        # Mold killed after its workers kept failing
    ABORTED = "aborted"            # Spawn attempt abandoned by the monitor
    RETIRED = "retired"            # Outgoing mold after a refork
    SHUTDOWN = "shutdown"          # Monitor shutting down


MOLD_VALID_TRANSITIONS: dict[MoldState, frozenset[MoldState]] = {
    MoldState.SPAWNING: frozenset({
        MoldState.READY,
        MoldState.FAILED,
        MoldState.TERMINATED,
    }),
    MoldState.READY: frozenset({
        MoldState.TERMINATED,
        MoldState.FAILED,
    }),
    MoldState.TERMINATED: frozenset(),  # terminal
    MoldState.FAILED: frozenset(),  # terminal
}

WORKER_VALID_TRANSITIONS: dict[WorkerState, frozenset[WorkerState]] = {
    WorkerState.SPAWNING: frozenset({
        WorkerState.READY,
        WorkerState.TERMINATING,
        WorkerState.REAPED,
    }),
    WorkerState.READY: frozenset({
        WorkerState.TERMINATING,
        WorkerState.REAPED,
    }),
    WorkerState.TERMINATING: frozenset({
        WorkerState.REAPED,
    }),
    WorkerState.REAPED: frozenset(),  # terminal
}


def validate_mold_transition(current: MoldState, target: MoldState) -> None:
    """Raise :class:`InvalidTransitionError` if *current* → *target* is illegal."""
    if target not in MOLD_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "MoldState")


def validate_worker_transition(current: WorkerState, target: WorkerState) -> None:
    """Raise :class:`InvalidTransitionError` if *current* → *target* is illegal."""
    if target not in WORKER_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "WorkerState")


@dataclass(kw_only=True)
class ProcessHandle:
    """One supervised OS child.

    Signals go through the owning backend so the same handle works for
    real processes and simulated ones.
    """

    kind: ChildKind
    generation: int
    spawn_id: int
    backend: ProcessBackend | None = field(default=None, repr=False, compare=False)
    pid: int | None = None
    spawned_at: float = 0.0
    deadline: float | None = None
    exit_status: int | None = None
    exited: bool = False
    kill_reason: ReapReason | None = None

    @property
    def alive(self) -> bool:
        """True while the child has a pid and has not been reaped."""
        return self.pid is not None and not self.exited

    def send_signal(self, sig: int) -> bool:
        """Send *sig* to the child; False if it is gone or has no pid yet."""
        if not self.alive or self.backend is None:
            return False
        try:
            self.backend.send_signal(self.pid, sig)
        except ProcessLookupError:
            return False
        return True

    def terminate(self, reason: ReapReason | None = None) -> bool:
        if reason is not None:
            self.kill_reason = reason
        return self.send_signal(signal.SIGTERM)

    def kill(self, reason: ReapReason) -> bool:
        self.kill_reason = reason
        return self.send_signal(signal.SIGKILL)

    def mark_exited(self, status: int | None) -> None:
        self.exited = True
        self.exit_status = status

    def describe(self) -> dict[str, Any]:
        """Identity fields for events and logs."""
        return {
            "kind": self.kind.value,
            "pid": self.pid,
            "generation": self.generation,
            "spawn_id": self.spawn_id,
        }


@dataclass(kw_only=True)
class Mold(ProcessHandle):
    """A prototype process workers of one generation are forked from."""

    kind: ChildKind = ChildKind.MOLD
    state: MoldState = MoldState.SPAWNING
    basis_pid: int | None = None

    def transition_to(self, target: MoldState) -> None:
        validate_mold_transition(self.state, target)
        self.state = target

    @property
    def ready(self) -> bool:
        return self.state is MoldState.READY and not self.exited


@dataclass(kw_only=True)
class Worker(ProcessHandle):
    """A request-serving process occupying slot ``nr``."""

    kind: ChildKind = ChildKind.WORKER
    nr: int
    state: WorkerState = WorkerState.SPAWNING
    mold_spawn_id: int | None = None
    requests: int = 0

    def transition_to(self, target: WorkerState) -> None:
        validate_worker_transition(self.state, target)
        self.state = target

    @property
    def ready(self) -> bool:
        return self.state is WorkerState.READY and not self.exited

    @property
    def occupies_slot(self) -> bool:
        return self.state is not WorkerState.REAPED

    def describe(self) -> dict[str, Any]:
        info = super().describe()
        info["nr"] = self.nr
        return info


__all__ = [
    "ChildKind",
    "MoldState",
    "WorkerState",
    "ReapReason",
    "MOLD_VALID_TRANSITIONS",
    "WORKER_VALID_TRANSITIONS",
    "validate_mold_transition",
    "validate_worker_transition",
    "ProcessHandle",
    "Mold",
    "Worker",
]
