"""Worker pool manager: keeps every slot filled from the current mold.

Slots ``0..worker_processes-1`` each hold at most one live worker.  An
empty slot is refilled from the current ready mold on every tick, except
while a crashed worker's slot is backing off.

Spawn failures are counted per mold, consecutively.  The first one is
retried right away; the second means the mold itself is broken, so it
is condemned and the mold manager decides between abandoning the
transition and shutting down.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from refork.core.errors import ChildCrash, SpawnFailure, SpawnTimeout
from refork.core.logging import get_logger
from refork.supervision.backend import ProcessBackend
from refork.supervision.backoff import ConsecutiveFailures
from refork.supervision.condition import ReforkCondition
from refork.supervision.events import EventEmitter, EventType
from refork.supervision.models import Mold, ReapReason, Worker, WorkerState
from refork.supervision.registry import Registry

logger = get_logger(__name__)


class WorkerPool:
    """Spawns, registers and reaps workers."""

    def __init__(
        self,
        settings: Any,
        backend: ProcessBackend,
        registry: Registry,
        events: EventEmitter,
        condition: ReforkCondition,
    ):
        self.settings = settings
        self.backend = backend
        self.registry = registry
        self.events = events
        self.condition = condition
        self.failures = ConsecutiveFailures()
        self.stopping = False
        self._respawn_at: dict[int, float] = {}

        self.on_mold_corrupted: Callable[[Mold, float], None] | None = None

    @property
    def size(self) -> int:
        return self.settings.worker_processes

    # ── Slot maintenance ─────────────────────────────────────────

    def maintain(self, mold: Mold | None, now: float) -> None:
        """Spawn a worker from *mold* into every empty slot."""
        if self.stopping or mold is None:
            return
        for nr in range(self.size):
            if not mold.ready:
                return
            if self.registry.slot(nr):
                continue
            if self._respawn_at.get(nr, 0.0) > now:
                continue
            self._respawn_at.pop(nr, None)
            self.spawn(nr, mold, now)

    def spawn(self, nr: int, mold: Mold, now: float) -> Worker | None:
        worker = Worker(
            nr=nr,
            generation=mold.generation,
            spawn_id=self.registry.next_spawn_id(),
            backend=self.backend,
            spawned_at=now,
            deadline=now + self.settings.spawn_timeout,
            mold_spawn_id=mold.spawn_id,
        )
        self.registry.add(worker)
        try:
            pid = self.backend.spawn_worker(worker, mold)
        except SpawnFailure as exc:
            logger.error("worker_spawn_error", nr=nr, generation=mold.generation, **exc.to_dict())
            self._drop(worker)
            self._failed(worker, now)
            return None
        if pid is not None:
            self.on_spawned(worker, pid)
        return worker

    def _drop(self, worker: Worker) -> None:
        """Forget a worker that has no pid; a late report for it gets SIGKILL."""
        worker.transition_to(WorkerState.REAPED)
        self.registry.remove(worker)
        self.registry.abandon(worker.spawn_id, owner=worker.mold_spawn_id)

    # ── Child reports ────────────────────────────────────────────

    def on_spawned(self, worker: Worker, pid: int) -> None:
        self.registry.assign_pid(worker, pid)
        self.events.emit(EventType.CHILD_SPAWNED, **worker.describe())

    def on_ready(self, worker: Worker, now: float) -> None:
        if worker.state is not WorkerState.SPAWNING:
            return
        worker.transition_to(WorkerState.READY)
        worker.deadline = None
        self.failures.success(worker.mold_spawn_id)
        self.events.emit(EventType.CHILD_READY, **worker.describe())
        self.events.emit(EventType.WORKER_REGISTERED, **worker.describe())

    def on_requests(self, worker: Worker, count: int) -> None:
        worker.requests = count
        self.condition.record(worker.nr, worker.generation, count)

    def on_exit(self, worker: Worker, now: float) -> None:
        """Handle the reap of *worker*; may condemn its mold."""
        self.registry.remove(worker)
        self.condition.forget(worker.generation, worker.nr)
        previous = worker.state
        if previous is not WorkerState.REAPED:
            worker.transition_to(WorkerState.REAPED)
        describe = worker.describe()

        if self.stopping:
            reason = worker.kill_reason or ReapReason.SHUTDOWN
        elif previous is WorkerState.SPAWNING:
            reason = ReapReason.SPAWN_FAILED
        elif previous is WorkerState.READY:
            reason = ReapReason.CRASHED
        else:
            reason = worker.kill_reason or ReapReason.TERMINATED
        self.events.emit(EventType.CHILD_REAPED, reason=reason, status=worker.exit_status, **describe)

        if self.stopping:
            return
        if previous is WorkerState.SPAWNING:
            self._failed(worker, now)
        elif previous is WorkerState.READY:
            delay = self.settings.backoff_delay
            crash = ChildCrash(f"worker={worker.nr} exited unexpectedly", status=worker.exit_status)
            logger.warning("worker_crashed", respawn_in=delay, **crash.with_context(**describe).to_dict())
            self._respawn_at[worker.nr] = now + delay

    # ── Timers ───────────────────────────────────────────────────

    def check_deadlines(self, now: float) -> None:
        for worker in self.registry.workers_in(WorkerState.TERMINATING):
            if worker.kill_reason is None and worker.deadline is not None and now >= worker.deadline:
                logger.warning("worker_kill_after_grace", nr=worker.nr, pid=worker.pid)
                worker.kill(ReapReason.TIMEOUT)
        for worker in self.registry.workers_in(WorkerState.SPAWNING):
            # A condemned mold aborts its other spawns while we iterate.
            if worker.state is not WorkerState.SPAWNING:
                continue
            if worker.deadline is None or now < worker.deadline:
                continue
            timeout = SpawnTimeout(timeout=self.settings.spawn_timeout).with_context(**worker.describe())
            logger.warning("worker_spawn_timeout", **timeout.to_dict())
            self.events.emit(EventType.SPAWN_TIMEOUT, timeout=self.settings.spawn_timeout, **worker.describe())
            if worker.alive:
                worker.transition_to(WorkerState.TERMINATING)
                worker.kill(ReapReason.TIMEOUT)
            else:
                self._drop(worker)
            self._failed(worker, now)

    # ── Failures ─────────────────────────────────────────────────

    def _failed(self, worker: Worker, now: float) -> None:
        mold = self.registry.by_spawn_id(worker.mold_spawn_id) if worker.mold_spawn_id is not None else None
        if not isinstance(mold, Mold) or not mold.ready:
            logger.debug("worker_failure_ignored", nr=worker.nr, generation=worker.generation)
            return

        failures = self.failures.failure(mold.spawn_id)
        self.events.emit(
            EventType.SPAWN_FAILED,
            kind="worker",
            nr=worker.nr,
            generation=worker.generation,
            retry_count=min(failures, 2),
        )
        if failures < 2:
            return

        self.failures.success(mold.spawn_id)
        self.abort_pending(mold)
        if self.on_mold_corrupted is not None:
            self.on_mold_corrupted(mold, now)

    def abort_pending(self, mold: Mold) -> None:
        """Kill every worker of *mold* that has not reported ready."""
        for worker in self.registry.workers_in(WorkerState.SPAWNING):
            if worker.mold_spawn_id != mold.spawn_id:
                continue
            if worker.alive:
                worker.transition_to(WorkerState.TERMINATING)
                worker.kill(ReapReason.ABORTED)
            else:
                self._drop(worker)

    def abandon_unborn(self, mold: Mold) -> None:
        """Drop workers *mold* was asked to fork but never reported."""
        for worker in self.registry.workers_in(WorkerState.SPAWNING):
            if worker.mold_spawn_id == mold.spawn_id and worker.pid is None:
                self._drop(worker)

    def forget_mold(self, mold: Mold) -> None:
        """Drop failure counts and abandoned spawn ids kept for a reaped mold."""
        self.failures.forget(mold.spawn_id)
        self.registry.prune_abandoned(mold.spawn_id)

    # ── Termination ──────────────────────────────────────────────

    def terminate(self, worker: Worker, now: float) -> bool:
        """Ask a ready worker to finish in-flight work and exit.

        A worker still alive after ``shutdown_timeout`` is killed.
        """
        worker.transition_to(WorkerState.TERMINATING)
        worker.deadline = now + self.settings.shutdown_timeout
        return worker.terminate()

    def stop(self) -> None:
        self.stopping = True
        self._respawn_at.clear()


__all__ = ["WorkerPool"]
