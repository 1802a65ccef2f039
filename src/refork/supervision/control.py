"""Control loop: the monitor's single-threaded dispatcher.

Every state change in the supervisor happens here, one notification at
a time, so nothing needs a lock::

    run()
     └─ start()                         spawn mold generation 0
     └─ step() until an exit code is set
          ├─ backend.poll(tick_interval) child reports, exits, signals
          ├─ dispatch(notification)      for each, in arrival order
          └─ tick()
               ├─ mold deadlines + scheduled retry
               ├─ worker deadlines
               ├─ fill empty slots from the current mold
               ├─ advance the rollout
               └─ check the refork condition

Exit status: 0 after a requested shutdown, 1 when no mold could be kept
alive.
"""

from __future__ import annotations

import signal
import time
from collections.abc import Callable
from typing import Any

from refork.core.errors import NoMoldAliveError
from refork.core.logging import get_logger
from refork.supervision.backend import ProcessBackend
from refork.supervision.condition import ReforkCondition
from refork.supervision.events import (
    EventEmitter,
    EventSink,
    EventType,
    LoggingSink,
    RejectReason,
)
from refork.supervision.fork_safety import ForkSafety
from refork.supervision.models import (
    Mold,
    MoldState,
    ProcessHandle,
    ReapReason,
    Worker,
    WorkerState,
)
from refork.supervision.molds import MoldManager
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
from refork.supervision.registry import Registry
from refork.supervision.rollout import RolloutSequencer
from refork.supervision.workers import WorkerPool

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_NO_MOLD = 1


class ControlLoop:
    """Drives molds, workers and rollouts from backend notifications.

    Example:
        >>> loop = ControlLoop(settings, MemoryBackend(), sink=MemorySink())
        >>> loop.run()
        0
    """

    def __init__(
        self,
        settings: Any,
        backend: ProcessBackend,
        sink: EventSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.backend = backend
        self.clock = clock
        self.events = EventEmitter(sink if sink is not None else LoggingSink(), clock)
        self.registry = Registry()
        self.fork_safety = ForkSafety()
        self.condition = ReforkCondition(settings.refork_after, settings.refork_threshold_mode)

        self.molds = MoldManager(
            settings, backend, self.registry, self.events, self.condition, fork_safety=self.fork_safety
        )
        self.workers = WorkerPool(settings, backend, self.registry, self.events, self.condition)
        self.rollout = RolloutSequencer(self.registry, self.workers, self.events)

        self.molds.on_current_changed = self._on_current_changed
        self.workers.on_mold_corrupted = self.molds.condemn
        self.rollout.on_completed = self._on_rollout_completed

        self.exit_code: int | None = None
        self.shutting_down = False
        self._shutdown_code = EXIT_OK
        self._term_deadline: float | None = None
        self._kill_deadline: float | None = None
        self._started = False

    # ── Lifecycle ────────────────────────────────────────────────

    def run(self) -> int:
        """Start, loop until an exit code is set, return it."""
        self.start()
        try:
            while self.exit_code is None:
                self.step()
        finally:
            self.backend.close()
        return self.exit_code

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.backend.start()
        logger.info(
            "monitor_started",
            worker_processes=self.settings.worker_processes,
            refork_after=self.settings.refork_after,
            reforking_available=self.backend.reforking_available,
        )
        self.molds.spawn_initial(self.clock())

    def step(self) -> None:
        for notification in self.backend.poll(self.settings.tick_interval):
            self.dispatch(notification)
        self.tick()

    # ── Dispatch ─────────────────────────────────────────────────

    def dispatch(self, notification: Notification) -> None:
        try:
            self._dispatch(notification)
        except NoMoldAliveError as exc:
            self._fatal(exc)

    def _dispatch(self, notification: Notification) -> None:
        now = self.clock()
        if isinstance(notification, ChildSpawned):
            self._on_spawned(notification)
        elif isinstance(notification, ChildReady):
            self._on_ready(notification, now)
        elif isinstance(notification, RequestsServed):
            handle = self.registry.by_pid(notification.pid)
            if isinstance(handle, Worker):
                self.workers.on_requests(handle, notification.count)
        elif isinstance(notification, ForkUnsafe):
            self._on_fork_unsafe(notification)
        elif isinstance(notification, ChildExited):
            self._on_exited(notification, now)
        elif isinstance(notification, SignalReceived):
            if notification.signal is ControlSignal.REFORK:
                self.request_refork()
            else:
                self.shutdown(EXIT_OK, reason="signal", signame=notification.signame)
        else:
            raise TypeError(f"Unknown notification: {notification!r}")

    def _lookup(self, spawn_id: int, pid: int) -> ProcessHandle | None:
        handle = None if self.registry.is_abandoned(spawn_id) else self.registry.by_spawn_id(spawn_id)
        if handle is not None:
            return handle
        # Every live spawn stays registered until reaped, so this child is stale.
        if self.registry.is_abandoned(spawn_id):
            logger.warning("late_child_killed", spawn_id=spawn_id, pid=pid)
        else:
            logger.warning("unknown_spawn_id", spawn_id=spawn_id, pid=pid)
        try:
            self.backend.send_signal(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        return None

    def _on_spawned(self, notification: ChildSpawned) -> None:
        handle = self._lookup(notification.spawn_id, notification.pid)
        if handle is None or handle.pid is not None:
            return
        if isinstance(handle, Mold):
            self.molds.on_spawned(handle, notification.pid)
        else:
            self.workers.on_spawned(handle, notification.pid)
        if self.shutting_down:
            self._stop_child(handle)

    def _on_ready(self, notification: ChildReady, now: float) -> None:
        handle = self._lookup(notification.spawn_id, notification.pid)
        if handle is None:
            return
        if handle.pid is None:
            self._on_spawned(ChildSpawned(notification.spawn_id, notification.pid, notification.kind))
        if self.shutting_down:
            return
        if isinstance(handle, Mold):
            self.molds.on_ready(handle, now)
        else:
            self.workers.on_ready(handle, now)

    def _on_fork_unsafe(self, notification: ForkUnsafe) -> None:
        handle = self.registry.by_pid(notification.pid)
        nr = handle.nr if isinstance(handle, Worker) else None
        if self.fork_safety.disable(by=notification.pid, nr=nr):
            self.events.emit(
                EventType.FORK_SAFETY_DISABLED,
                pid=notification.pid,
                nr=nr,
                kind=handle.kind.value if handle is not None else None,
            )

    def _on_exited(self, notification: ChildExited, now: float) -> None:
        handle = self.registry.by_pid(notification.pid)
        if handle is None:
            logger.debug("unknown_child_reaped", pid=notification.pid, status=notification.status)
            return
        handle.mark_exited(notification.status)
        if isinstance(handle, Mold):
            self.workers.abandon_unborn(handle)
            self.workers.forget_mold(handle)
            self.molds.on_exit(handle, now)
        else:
            self.workers.on_exit(handle, now)

    # ── Periodic work ────────────────────────────────────────────

    def tick(self) -> None:
        now = self.clock()
        if self.shutting_down:
            self._drive_shutdown(now)
            return
        try:
            self.molds.check_deadlines(now)
            self.molds.run_scheduled(now)
            self.workers.check_deadlines(now)
            self.workers.maintain(self.molds.current, now)
            self.rollout.advance(now)
            self._check_condition(now)
        except NoMoldAliveError as exc:
            self._fatal(exc)

    def _check_condition(self, now: float) -> None:
        mold = self.molds.current
        if not self.condition.enabled or mold is None or not mold.ready:
            return
        if self.molds.transition_in_progress or self.rollout.active:
            return
        nr = self.condition.check(mold.generation, now)
        if nr is None:
            return
        if not self.fork_safety.safe:
            self._reject(RejectReason.FORK_UNSAFE, source="condition")
            return
        if not self.backend.reforking_available:
            self._reject(RejectReason.UNAVAILABLE, source="condition")
            return

        basis = self.registry.ready_worker(nr, mold.generation) or mold
        self.events.emit(
            EventType.REFORK_TRIGGERED,
            generation=mold.generation + 1,
            basis_generation=mold.generation,
            basis_pid=basis.pid,
            source="condition",
            nr=nr,
            count=self.condition.count(mold.generation, nr),
        )
        self.molds.begin_transition(basis, now)

    # ── Reforks ──────────────────────────────────────────────────

    def request_refork(self) -> bool:
        """Start a refork now, bypassing the request-count condition.

        Returns False (and emits ``refork_rejected``) when the monitor is
        shutting down, fork safety is off, the platform cannot refork, or
        a transition or rollout is already running.
        """
        mold = self.molds.current
        if self.shutting_down:
            reason = RejectReason.SHUTTING_DOWN
        elif not self.fork_safety.safe:
            reason = RejectReason.FORK_UNSAFE
        elif not self.backend.reforking_available:
            reason = RejectReason.UNAVAILABLE
        elif mold is None or not mold.ready or self.molds.transition_in_progress or self.rollout.active:
            reason = RejectReason.IN_PROGRESS
        else:
            reason = None
        if reason is not None:
            self._reject(reason, source="signal")
            return False

        basis: ProcessHandle = mold
        for worker in self.registry.workers():
            if worker.ready and worker.generation == mold.generation:
                basis = worker
                break
        now = self.clock()
        self.events.emit(
            EventType.REFORK_TRIGGERED,
            generation=mold.generation + 1,
            basis_generation=mold.generation,
            basis_pid=basis.pid,
            source="signal",
        )
        try:
            self.molds.begin_transition(basis, now)
        except NoMoldAliveError as exc:
            self._fatal(exc)
        return True

    def _reject(self, reason: RejectReason, source: str) -> None:
        if reason is RejectReason.FORK_UNSAFE:
            logger.info("refork_refused", source=source, **self.fork_safety.error().to_dict())
        self.events.emit(
            EventType.REFORK_REJECTED,
            reason=reason,
            source=source,
            disabled_by=self.fork_safety.disabled_by,
            disabled_by_nr=self.fork_safety.disabled_by_nr,
        )

    def _on_current_changed(self, mold: Mold) -> None:
        self.rollout.start(mold.generation)

    def _on_rollout_completed(self, generation: int) -> None:
        self.molds.retire_outgoing()

    # ── Shutdown ─────────────────────────────────────────────────

    def _fatal(self, exc: NoMoldAliveError) -> None:
        logger.critical("no_mold_alive", **exc.to_dict())
        self.shutdown(EXIT_NO_MOLD, reason="no-live-mold")

    def shutdown(self, exit_code: int = EXIT_OK, reason: str = "requested", signame: str | None = None) -> None:
        """SIGTERM every child; the loop exits once all are reaped or killed."""
        if self.shutting_down:
            self._shutdown_code = max(self._shutdown_code, exit_code)
            return
        self.shutting_down = True
        self._shutdown_code = exit_code
        self.molds.stop()
        self.workers.stop()
        self.rollout.stop()
        self.events.emit(EventType.SHUTDOWN_STARTED, reason=reason, signame=signame, exit_code=exit_code)

        for handle in self.registry:
            self._stop_child(handle)
        self._term_deadline = self.clock() + self.settings.shutdown_timeout
        self._kill_deadline = None

    def _stop_child(self, handle: ProcessHandle) -> None:
        if isinstance(handle, Worker) and handle.state in (WorkerState.SPAWNING, WorkerState.READY):
            handle.transition_to(WorkerState.TERMINATING)
        elif isinstance(handle, Mold) and handle.state in (MoldState.SPAWNING, MoldState.READY):
            handle.transition_to(MoldState.TERMINATED)

        if handle.alive:
            if handle.kill_reason is None:
                handle.kill_reason = ReapReason.SHUTDOWN
            handle.send_signal(signal.SIGTERM)
        elif handle.pid is None:
            if isinstance(handle, Worker):
                handle.transition_to(WorkerState.REAPED)
            self.registry.remove(handle)
            self.registry.abandon(handle.spawn_id)

    def _drive_shutdown(self, now: float) -> None:
        live = self.registry.live()
        if not live:
            self._finish()
            return
        if self._kill_deadline is None:
            if self._term_deadline is not None and now >= self._term_deadline:
                logger.warning("shutdown_grace_expired", pids=[handle.pid for handle in live])
                for handle in live:
                    handle.send_signal(signal.SIGKILL)
                self._kill_deadline = now + self.settings.kill_timeout
        elif now >= self._kill_deadline:
            logger.error("children_not_reaped", pids=[handle.pid for handle in live])
            self._finish()

    def _finish(self) -> None:
        self.exit_code = self._shutdown_code
        self.events.emit(EventType.SHUTDOWN_COMPLETED, exit_code=self.exit_code)

    # ── Introspection ────────────────────────────────────────────

    @property
    def generation(self) -> int | None:
        """Generation of the current mold."""
        return self.molds.current.generation if self.molds.current is not None else None

    def worker_generations(self) -> dict[int, int]:
        """``nr -> generation`` of every ready worker."""
        return {worker.nr: worker.generation for worker in self.registry.workers() if worker.ready}


__all__ = ["ControlLoop", "EXIT_OK", "EXIT_NO_MOLD"]
