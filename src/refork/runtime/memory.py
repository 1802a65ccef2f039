"""In-memory process backend for testing and development.

Children are simulated: nothing is forked, pids are made up, and every
report a real child would send is queued for the next ``poll()``.  Hooks
still run (in the calling process), so hook failures and
``no_longer_fork_safe()`` behave as they would in a real child.

Use it with :class:`SimClock` as the control loop's clock: ``poll`` on
an empty queue advances simulated time by the poll timeout, so
spawn timeouts, backoffs and shutdown grace periods elapse instantly.

Example:
    >>> clock = SimClock()
    >>> backend = MemoryBackend(clock=clock)
    >>> loop = ControlLoop(settings, backend, sink=MemorySink(), clock=clock)
    >>> loop.start()
    >>> for _ in range(5):
    ...     loop.step()
    >>> backend.serve_requests(10)
    10
"""

from __future__ import annotations

import itertools
import os
import signal
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from refork.core.errors import SpawnFailure
from refork.core.logging import get_logger
from refork.runtime.children import set_fork_unsafe_reporter
from refork.supervision.hooks import Hooks, MoldInfo, ServerContext, WorkerInfo, run_hook
from refork.supervision.models import ChildKind, Mold, ProcessHandle, Worker
from refork.supervision.notifications import (
    ChildExited,
    ChildReady,
    ChildSpawned,
    ControlSignal,
    ForkUnsafe,
    Notification,
    RequestsServed,
    SignalReceived,
)

logger = get_logger(__name__)

STOP_SIGNALS = frozenset({signal.SIGTERM, signal.SIGINT, signal.SIGQUIT})


class SimClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class Outcome(str, Enum):
    """What a simulated child does after it is forked."""

    READY = "ready"        # Reports spawned, runs its hook, reports ready
    CRASH = "crash"        # Reports spawned, then exits with status 1
    HANG = "hang"          # Reports spawned, never becomes ready
    NO_SHOW = "no_show"    # Never reports anything


Policy = Callable[[ChildKind, int, int | None], Outcome]


@dataclass
class SimChild:
    """A simulated mold or worker."""

    pid: int
    kind: ChildKind
    spawn_id: int
    generation: int
    nr: int | None = None
    basis_pid: int | None = None
    alive: bool = True
    ready: bool = False
    requests: int = 0
    ignores_term: bool = False
    info: WorkerInfo | None = None


class MemoryBackend:
    """Simulated :class:`~refork.supervision.backend.ProcessBackend`.

    Args:
        hooks: Hooks to run in each simulated child
        reforking_available: Whether molds may be forked from children
        clock: Clock to advance when ``poll`` finds nothing to report
        policy: ``(kind, generation, nr) -> Outcome`` for every spawn
            not covered by :meth:`script`
        settings: Passed to hooks as ``server.settings``
    """

    def __init__(
        self,
        hooks: Hooks | None = None,
        reforking_available: bool = True,
        clock: SimClock | None = None,
        policy: Policy | None = None,
        settings: Any = None,
    ):
        self.hooks = hooks or Hooks()
        self._reforking_available = reforking_available
        self.clock = clock
        self.policy = policy
        self.server = ServerContext(settings=settings, monitor_pid=os.getpid())
        self.children: dict[int, SimChild] = {}
        self.signals_sent: list[tuple[int, int]] = []
        self.started = False
        self.closed = False
        self._queue: deque[Notification] = deque()
        self._scripted: list[tuple[ChildKind, int | None, Outcome]] = []
        self._pids = itertools.count(1000)
        self._turn = 0

    @property
    def reforking_available(self) -> bool:
        return self._reforking_available

    def start(self) -> None:
        self.started = True

    def close(self) -> None:
        self.closed = True

    # ── Scripting ────────────────────────────────────────────────

    def script(self, kind: ChildKind, *outcomes: Outcome, generation: int | None = None) -> None:
        """Queue outcomes for the next spawns of *kind* (optionally of one generation)."""
        for outcome in outcomes:
            self._scripted.append((kind, generation, outcome))

    def _outcome(self, kind: ChildKind, generation: int, nr: int | None) -> Outcome:
        for index, (scripted_kind, scripted_generation, outcome) in enumerate(self._scripted):
            if scripted_kind is kind and scripted_generation in (None, generation):
                del self._scripted[index]
                return outcome
        if self.policy is not None:
            return self.policy(kind, generation, nr)
        return Outcome.READY

    # ── Spawning ─────────────────────────────────────────────────

    def spawn_mold(self, mold: Mold, basis: ProcessHandle | None) -> int | None:
        if basis is not None:
            self._require_alive(basis, mold)
        child = self._new_child(ChildKind.MOLD, mold.spawn_id, mold.generation, basis_pid=basis.pid if basis else None)
        # Only the monitor's own forks hand back a pid immediately.
        return child.pid if basis is None else None

    def spawn_worker(self, worker: Worker, mold: Mold) -> int | None:
        self._require_alive(mold, worker)
        self._new_child(ChildKind.WORKER, worker.spawn_id, worker.generation, nr=worker.nr, basis_pid=mold.pid)
        return None

    def _require_alive(self, target: ProcessHandle, requested: ProcessHandle) -> None:
        child = self.children.get(target.pid) if target.pid is not None else None
        if child is None or not child.alive:
            raise SpawnFailure(f"cannot reach {target.kind.value} pid={target.pid}").with_context(
                kind=requested.kind.value, generation=requested.generation, spawn_id=requested.spawn_id
            )

    def _new_child(
        self,
        kind: ChildKind,
        spawn_id: int,
        generation: int,
        nr: int | None = None,
        basis_pid: int | None = None,
    ) -> SimChild:
        child = SimChild(
            pid=next(self._pids),
            kind=kind,
            spawn_id=spawn_id,
            generation=generation,
            nr=nr,
            basis_pid=basis_pid,
        )
        self.children[child.pid] = child
        outcome = self._outcome(kind, generation, nr)
        logger.debug("sim_child_forked", kind=kind.value, pid=child.pid, generation=generation, nr=nr, outcome=outcome.value)
        if outcome is Outcome.NO_SHOW:
            return child

        self._queue.append(ChildSpawned(spawn_id, child.pid, kind))
        if outcome is Outcome.CRASH:
            self._exit(child, 1)
        elif outcome is Outcome.READY:
            self._boot(child)
        return child

    def _boot(self, child: SimChild) -> None:
        previous = set_fork_unsafe_reporter(lambda: self._queue.append(ForkUnsafe(child.pid)))
        try:
            if child.kind is ChildKind.MOLD:
                run_hook("after_mold_fork", self.hooks.after_mold_fork, self.server, MoldInfo(child.pid, child.generation))
            else:
                child.info = WorkerInfo(
                    child.pid,
                    child.nr,
                    child.generation,
                    _declare_unsafe=lambda: self._queue.append(ForkUnsafe(child.pid)),
                )
                run_hook("after_worker_fork", self.hooks.after_worker_fork, self.server, child.info)
        except SpawnFailure:
            self._exit(child, 1)
            return
        except SystemExit as exc:
            self._exit(child, exc.code if isinstance(exc.code, int) else (0 if exc.code is None else 1))
            return
        finally:
            set_fork_unsafe_reporter(previous)
        child.ready = True
        self._queue.append(ChildReady(child.spawn_id, child.pid, child.kind))

    def _exit(self, child: SimChild, status: int | None) -> None:
        if not child.alive:
            return
        child.alive = False
        child.ready = False
        self._queue.append(ChildExited(child.pid, status))

    # ── Signals ──────────────────────────────────────────────────

    def send_signal(self, pid: int, sig: int) -> None:
        child = self.children.get(pid)
        if child is None or not child.alive:
            raise ProcessLookupError(pid)
        self.signals_sent.append((pid, sig))
        if sig == signal.SIGKILL:
            self._exit(child, -signal.SIGKILL)
        elif sig in STOP_SIGNALS and not child.ignores_term:
            if child.info is not None and child.ready:
                try:
                    run_hook("before_worker_exit", self.hooks.before_worker_exit, self.server, child.info)
                except SpawnFailure as exc:
                    logger.error("before_worker_exit_failed", **exc.to_dict())
            self._exit(child, 0)

    def deliver_signal(self, control: ControlSignal, signame: str | None = None) -> None:
        """Queue a signal for the monitor, as if sent by an operator."""
        if signame is None:
            signame = "SIGUSR2" if control is ControlSignal.REFORK else "SIGTERM"
        self._queue.append(SignalReceived(control, signame))

    def crash(self, pid: int, status: int | None = 1) -> None:
        """Make a child die on its own."""
        self._exit(self.children[pid], status)

    def declare_fork_unsafe(self, pid: int) -> None:
        """Queue a ``no_longer_fork_safe()`` report from *pid*."""
        self._queue.append(ForkUnsafe(pid))

    # ── Traffic ──────────────────────────────────────────────────

    def ready_workers(self, nr: int | None = None) -> list[SimChild]:
        workers = [
            child
            for child in self.children.values()
            if child.kind is ChildKind.WORKER and child.alive and child.ready
        ]
        if nr is not None:
            workers = [child for child in workers if child.nr == nr]
        return sorted(workers, key=lambda child: (child.nr, child.pid))

    def live(self, kind: ChildKind | None = None) -> list[SimChild]:
        return [child for child in self.children.values() if child.alive and (kind is None or child.kind is kind)]

    def serve_requests(self, count: int, nr: int | None = None) -> int:
        """Spread *count* requests round-robin over ready workers; returns how many were served."""
        served = 0
        for _ in range(count):
            workers = self.ready_workers(nr)
            if not workers:
                break
            child = workers[self._turn % len(workers)]
            self._turn += 1
            child.requests += 1
            if child.info is not None:
                child.info.requests = child.requests
            self._queue.append(RequestsServed(child.pid, child.nr, child.generation, child.requests))
            served += 1
        return served

    def probe(self) -> bool:
        """True iff some worker would answer a request."""
        return bool(self.ready_workers())

    # ── Polling ──────────────────────────────────────────────────

    @property
    def pending(self) -> int:
        """Notifications queued for the next poll."""
        return len(self._queue)

    def poll(self, timeout: float) -> list[Notification]:
        if not self._queue:
            if self.clock is not None:
                self.clock.advance(timeout)
            return []
        notifications = list(self._queue)
        self._queue.clear()
        return notifications


__all__ = ["SimClock", "Outcome", "Policy", "SimChild", "MemoryBackend"]
