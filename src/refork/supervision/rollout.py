"""Rollout sequencer: replace outdated workers one slot at a time.

::

    for each slot, lowest index first:
        SIGTERM the outdated worker        ─► worker_terminate_sent(nr)
        wait: it is reaped, the slot is refilled from the current mold,
              the replacement reports ready ─► worker_registered(nr)
    rollout_completed

Nothing is signalled while any slot is spawning or terminating, so at
most one slot is ever out of service.
"""

from __future__ import annotations

from collections.abc import Callable

from refork.core.logging import get_logger
from refork.supervision.events import EventEmitter, EventType
from refork.supervision.models import WorkerState
from refork.supervision.registry import Registry
from refork.supervision.workers import WorkerPool

logger = get_logger(__name__)


class RolloutSequencer:
    """Moves every worker slot to the target generation, serially."""

    def __init__(self, registry: Registry, workers: WorkerPool, events: EventEmitter):
        self.registry = registry
        self.workers = workers
        self.events = events
        self.target: int | None = None
        self.active = False
        self.replaced = 0
        self._awaiting: int | None = None

        self.on_completed: Callable[[int], None] | None = None

    def start(self, generation: int) -> None:
        """Begin moving workers to *generation*; finishes at once if none are outdated."""
        self.target = generation
        self.replaced = 0
        self._awaiting = None
        self.active = bool(self._outdated())
        if self.active:
            logger.info("rollout_started", generation=generation, outdated=len(self._outdated()))
        elif self.on_completed is not None:
            self.on_completed(generation)

    def _outdated(self):
        return [worker for worker in self.registry.workers() if worker.generation != self.target]

    def advance(self, now: float) -> None:
        if not self.active or self.target is None:
            return

        if self._awaiting is not None:
            if self.registry.ready_worker(self._awaiting, self.target) is None:
                return
            self._awaiting = None

        if self.registry.workers_in(WorkerState.SPAWNING, WorkerState.TERMINATING):
            return

        outdated = self._outdated()
        if not outdated:
            self.active = False
            self.events.emit(EventType.ROLLOUT_COMPLETED, generation=self.target, replaced=self.replaced)
            if self.on_completed is not None:
                self.on_completed(self.target)
            return

        candidates = [worker for worker in outdated if worker.ready]
        if not candidates:
            return
        worker = candidates[0]
        self.workers.terminate(worker, now)
        self.events.emit(EventType.WORKER_TERMINATE_SENT, **worker.describe())
        self._awaiting = worker.nr
        self.replaced += 1

    def stop(self) -> None:
        self.active = False
        self._awaiting = None


__all__ = ["RolloutSequencer"]
