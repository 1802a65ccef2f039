"""Mold manager: the lineage of prototype processes.

One mold is *current*: workers are forked from it.  A refork spawns the
next generation from a basis (preferably the warm worker that tripped the
refork condition); when it reports ready it becomes current and the old
one is retired.

Failure handling::

    spawn fails ──► retry once after backoff_delay (same generation, same basis)
                      │
                      └─ fails again ──► another mold alive?  ── yes ─► abandon transition,
                                                 │                       condition backs off
                                                 no
                                                 ▼
                                         fatal: NoMoldAliveError (exit 1)

A ready current mold that dies is the first failure of a replacement
transition to the next generation.  Once fork safety is off, a scheduled
refork retry is dropped while a mold still serves, and a lost current
mold is replaced by a fork of the monitor rather than of a worker.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from refork.core.errors import ChildCrash, NoMoldAliveError, SpawnFailure, SpawnTimeout
from refork.core.logging import get_logger
from refork.supervision.backend import ProcessBackend
from refork.supervision.backoff import PendingRetry, RetryOnce, RetryStrategy
from refork.supervision.condition import ReforkCondition
from refork.supervision.events import EventEmitter, EventType, RejectReason
from refork.supervision.fork_safety import ForkSafety
from refork.supervision.models import Mold, MoldState, ProcessHandle, ReapReason, Worker
from refork.supervision.registry import Registry

logger = get_logger(__name__)


class MoldManager:
    """Owns the current mold, the mold being spawned and the outgoing one."""

    def __init__(
        self,
        settings: Any,
        backend: ProcessBackend,
        registry: Registry,
        events: EventEmitter,
        condition: ReforkCondition,
        retry: RetryStrategy | None = None,
        fork_safety: ForkSafety | None = None,
    ):
        self.settings = settings
        self.backend = backend
        self.registry = registry
        self.events = events
        self.condition = condition
        self.retry = retry or RetryOnce(delay=settings.backoff_delay)
        self.fork_safety = fork_safety if fork_safety is not None else ForkSafety()

        self.current: Mold | None = None
        self.pending: Mold | None = None
        self.outgoing: Mold | None = None
        self.scheduled: PendingRetry | None = None
        self.stopping = False
        self._failures = 0

        self.on_current_changed: Callable[[Mold], None] | None = None

    # ── Queries ──────────────────────────────────────────────────

    @property
    def transition_in_progress(self) -> bool:
        return self.pending is not None or self.scheduled is not None

    def alive(self) -> list[Mold]:
        """Ready molds that can still fork workers."""
        return [mold for mold in self.registry.molds() if mold.ready]

    # ── Spawning ─────────────────────────────────────────────────

    def spawn_initial(self, now: float) -> Mold | None:
        """Fork generation 0 from the monitor itself."""
        return self._spawn(0, None, failures=0, now=now)

    def begin_transition(self, basis: ProcessHandle | None, now: float) -> Mold | None:
        """Spawn the next generation from *basis* (a worker, a mold, or the monitor)."""
        if self.current is None:
            raise RuntimeError("No current mold to refork from")
        return self._spawn(self.current.generation + 1, basis, failures=0, now=now)

    def _spawn(self, generation: int, basis: ProcessHandle | None, failures: int, now: float) -> Mold | None:
        mold = Mold(
            generation=generation,
            spawn_id=self.registry.next_spawn_id(),
            backend=self.backend,
            spawned_at=now,
            deadline=now + self.settings.spawn_timeout,
            basis_pid=basis.pid if basis is not None else None,
        )
        self._failures = failures
        self.pending = mold
        self.registry.add(mold)
        logger.debug("mold_spawn_requested", generation=generation, basis_pid=mold.basis_pid, spawn_id=mold.spawn_id)

        try:
            pid = self.backend.spawn_mold(mold, basis)
        except SpawnFailure as exc:
            logger.error("mold_spawn_error", generation=generation, **exc.to_dict())
            self.pending = None
            mold.transition_to(MoldState.FAILED)
            self.registry.remove(mold)
            self.registry.abandon(mold.spawn_id)
            self._failed(mold, now)
            return None

        if pid is not None:
            self.on_spawned(mold, pid)
        return mold

    # ── Child reports ────────────────────────────────────────────

    def on_spawned(self, mold: Mold, pid: int) -> None:
        self.registry.assign_pid(mold, pid)
        self.events.emit(EventType.CHILD_SPAWNED, basis_pid=mold.basis_pid, **mold.describe())

    def on_ready(self, mold: Mold, now: float) -> None:
        if mold is not self.pending or mold.state is not MoldState.SPAWNING:
            logger.debug("stale_mold_ready", pid=mold.pid, generation=mold.generation)
            return

        mold.transition_to(MoldState.READY)
        mold.deadline = None
        self.pending = None
        self._failures = 0
        self.events.emit(EventType.CHILD_READY, nr=None, **mold.describe())

        previous = self.current
        self.current = mold
        self.condition.prune(mold.generation)
        self.registry.prune_abandoned(None)
        if previous is not None and previous.ready:
            if self.settings.mold_retirement == "on_promotion":
                self.retire(previous)
            else:
                if self.outgoing is not None:
                    self.retire(self.outgoing)
                self.outgoing = previous
        if self.on_current_changed is not None:
            self.on_current_changed(mold)

    def on_exit(self, mold: Mold, now: float) -> None:
        """Handle the reap of *mold*; may raise :class:`NoMoldAliveError`."""
        self.registry.remove(mold)

        if self.stopping:
            self._reaped(mold, mold.kill_reason or ReapReason.SHUTDOWN)
            if mold is self.pending:
                self.pending = None
            return

        if mold is self.pending:
            self.pending = None
            mold.transition_to(MoldState.FAILED)
            self._reaped(mold, mold.kill_reason or ReapReason.SPAWN_FAILED)
            self._failed(mold, now)
        elif mold is self.current:
            self.current = None
            mold.transition_to(MoldState.FAILED)
            self._reaped(mold, mold.kill_reason or ReapReason.CRASHED)
            self._lost_current(mold, now)
        elif mold is self.outgoing:
            self.outgoing = None
            if mold.state is MoldState.READY:
                mold.transition_to(MoldState.FAILED)
            self._reaped(mold, mold.kill_reason or ReapReason.CRASHED)
        else:
            self._reaped(mold, mold.kill_reason or ReapReason.TERMINATED)

    def _reaped(self, mold: Mold, reason: ReapReason) -> None:
        self.events.emit(EventType.CHILD_REAPED, reason=reason, status=mold.exit_status, **mold.describe())

    # ── Timers ───────────────────────────────────────────────────

    def check_deadlines(self, now: float) -> None:
        mold = self.pending
        if mold is None or mold.deadline is None or now < mold.deadline:
            return

        self.pending = None
        mold.transition_to(MoldState.FAILED)
        timeout = SpawnTimeout(timeout=self.settings.spawn_timeout).with_context(**mold.describe())
        logger.warning("mold_spawn_timeout", basis_pid=mold.basis_pid, **timeout.to_dict())
        self.events.emit(EventType.SPAWN_TIMEOUT, timeout=self.settings.spawn_timeout, **mold.describe())
        if mold.alive:
            mold.kill(ReapReason.TIMEOUT)
        else:
            # Nothing to kill yet; a late "spawned" for this id gets SIGKILL.
            self.registry.remove(mold)
            self.registry.abandon(mold.spawn_id)
        self._failed(mold, now)

    def run_scheduled(self, now: float) -> None:
        retry = self.scheduled
        if retry is None or self.pending is not None or self.stopping or now < retry.due:
            return
        self.scheduled = None
        if not self.fork_safety.safe and self.current is not None and self.current.ready:
            # A mold is still serving, so the retry is an optional refork.
            logger.info("refork_refused", source="retry", **self.fork_safety.error().to_dict())
            self.events.emit(
                EventType.REFORK_REJECTED,
                reason=RejectReason.FORK_UNSAFE,
                source="retry",
                generation=retry.generation,
                disabled_by=self.fork_safety.disabled_by,
                disabled_by_nr=self.fork_safety.disabled_by_nr,
            )
            self._give_up(retry.generation, now)
            return
        basis = self._resolve_basis(retry.basis_pid)
        logger.info("mold_spawn_retry", generation=retry.generation, basis_pid=basis.pid if basis else None)
        self._spawn(retry.generation, basis, failures=retry.failures, now=now)

    def _resolve_basis(self, basis_pid: int | None) -> ProcessHandle | None:
        """Pick the process to fork the next mold from; None means the monitor."""
        if not self.backend.reforking_available or not self.fork_safety.safe:
            return None
        if basis_pid is not None:
            handle = self.registry.by_pid(basis_pid)
            if isinstance(handle, (Mold, Worker)) and handle.ready:
                return handle
        if self.current is not None and self.current.ready:
            return self.current
        return None

    # ── Failure handling ─────────────────────────────────────────

    def _failed(self, mold: Mold, now: float) -> None:
        self._failures += 1
        failures = self._failures
        if self.stopping:
            return
        if self.retry.should_retry(failures):
            delay = self.retry.next_delay(failures)
            self.events.emit(
                EventType.SPAWN_FAILED,
                kind="mold",
                generation=mold.generation,
                retry_count=failures,
                delay=delay,
            )
            self.scheduled = PendingRetry(
                generation=mold.generation,
                basis_pid=mold.basis_pid,
                failures=failures,
                due=now + delay,
            )
            return

        self.events.emit(EventType.SPAWN_FAILED, kind="mold", generation=mold.generation, retry_count=failures)
        self._give_up(mold.generation, now)

    def _lost_current(self, mold: Mold, now: float) -> None:
        crash = ChildCrash("current mold exited unexpectedly", status=mold.exit_status)
        logger.warning("current_mold_lost", **crash.with_context(**mold.describe()).to_dict())
        if self.outgoing is not None and self.outgoing.ready:
            self._abandon(mold.generation, self.outgoing, now)
            return
        if self.transition_in_progress:
            return

        basis = None
        if self.fork_safety.safe:
            for worker in self.registry.workers():
                if worker.ready and worker.generation == mold.generation:
                    basis = worker
                    break
        else:
            logger.warning("cold_mold_replacement", generation=mold.generation + 1, disabled_by=self.fork_safety.disabled_by)
        self._failures = 1
        self.scheduled = PendingRetry(
            generation=mold.generation + 1,
            basis_pid=basis.pid if basis is not None else None,
            failures=1,
            due=now + self.retry.next_delay(1),
        )

    def condemn(self, mold: Mold, now: float) -> None:
        """Kill a mold whose workers keep failing and treat it as a second failure."""
        if mold.state in (MoldState.SPAWNING, MoldState.READY):
            mold.transition_to(MoldState.FAILED)
        mold.kill(ReapReason.CORRUPTED)
        if mold is self.outgoing:
            self.outgoing = None
        if mold is self.current:
            self.current = None
            self._give_up(mold.generation, now)

    def _give_up(self, generation: int, now: float) -> None:
        self._failures = 0
        self.scheduled = None
        serving = self.current if self.current is not None and self.current.ready else None
        if serving is None and self.outgoing is not None and self.outgoing.ready:
            serving = self.outgoing
        if serving is None:
            alive = self.alive()
            serving = alive[-1] if alive else None

        if serving is not None:
            self._abandon(generation, serving, now)
            return

        self.events.emit(EventType.FATAL, reason="no-live-mold", generation=generation)
        raise NoMoldAliveError(f"No mold alive after gen={generation} failed twice").with_context(
            kind="mold", generation=generation
        )

    def _abandon(self, generation: int, serving: Mold, now: float) -> None:
        delay = self.settings.backoff_delay
        self.events.emit(
            EventType.TRANSITION_ABANDONED,
            generation=generation,
            serving_generation=serving.generation,
            delay=delay,
        )
        self.condition.backoff(now, delay)
        self.condition.rearm()
        if serving is not self.current:
            self.current = serving
            if serving is self.outgoing:
                self.outgoing = None
            if self.on_current_changed is not None:
                self.on_current_changed(serving)

    # ── Retirement ───────────────────────────────────────────────

    def retire(self, mold: Mold) -> None:
        """SIGTERM a mold that is no longer current."""
        if mold.state in (MoldState.SPAWNING, MoldState.READY):
            mold.transition_to(MoldState.TERMINATED)
        if mold is self.outgoing:
            self.outgoing = None
        self.events.emit(EventType.MOLD_RETIRED, **mold.describe())
        mold.terminate(ReapReason.RETIRED)

    def retire_outgoing(self) -> None:
        if self.outgoing is not None:
            self.retire(self.outgoing)

    def stop(self) -> None:
        self.stopping = True
        self.scheduled = None


__all__ = ["MoldManager"]
