"""Readiness registry: every supervised child, indexed three ways.

The registry is the single place the monitor looks up a child, by pid
(``waitpid`` and datagrams), by spawn id (``spawned``/``ready`` messages
that may arrive before the pid is known) and by ``(generation, nr)``.
It also remembers spawn ids the monitor gave up on, so a child that
shows up late can be killed instead of adopted.
"""

from __future__ import annotations

from collections.abc import Iterator

from refork.supervision.models import Mold, ProcessHandle, Worker, WorkerState


class Registry:
    """In-memory index of molds and workers.

    Only the control loop mutates it.
    """

    def __init__(self) -> None:
        self._next_spawn_id = 0
        self._by_spawn_id: dict[int, ProcessHandle] = {}
        self._by_pid: dict[int, ProcessHandle] = {}
        self._abandoned: dict[int, int | None] = {}

    # ── Spawn ids ────────────────────────────────────────────────

    def next_spawn_id(self) -> int:
        self._next_spawn_id += 1
        return self._next_spawn_id

    def abandon(self, spawn_id: int, owner: int | None = None) -> None:
        """Forget a spawn attempt; late messages for it are stale.

        *owner* is the spawn id of the mold asked to fork the child, if any.
        """
        self._abandoned[spawn_id] = owner

    def is_abandoned(self, spawn_id: int) -> bool:
        return spawn_id in self._abandoned

    def prune_abandoned(self, owner: int | None) -> None:
        """Drop abandoned spawn ids of *owner*; their late reports count as unknown."""
        for spawn_id in [key for key, value in self._abandoned.items() if value == owner]:
            del self._abandoned[spawn_id]

    # ── Membership ───────────────────────────────────────────────

    def add(self, handle: ProcessHandle) -> None:
        self._by_spawn_id[handle.spawn_id] = handle
        if handle.pid is not None:
            self._by_pid[handle.pid] = handle

    def assign_pid(self, handle: ProcessHandle, pid: int) -> None:
        handle.pid = pid
        self._by_pid[pid] = handle

    def remove(self, handle: ProcessHandle) -> None:
        self._by_spawn_id.pop(handle.spawn_id, None)
        if handle.pid is not None and self._by_pid.get(handle.pid) is handle:
            del self._by_pid[handle.pid]

    def by_pid(self, pid: int) -> ProcessHandle | None:
        return self._by_pid.get(pid)

    def by_spawn_id(self, spawn_id: int) -> ProcessHandle | None:
        return self._by_spawn_id.get(spawn_id)

    def __iter__(self) -> Iterator[ProcessHandle]:
        return iter(list(self._by_spawn_id.values()))

    def __len__(self) -> int:
        return len(self._by_spawn_id)

    # ── Queries ──────────────────────────────────────────────────

    def molds(self) -> list[Mold]:
        return [handle for handle in self if isinstance(handle, Mold)]

    def workers(self) -> list[Worker]:
        """Workers still occupying a slot, ordered by slot."""
        found = [handle for handle in self if isinstance(handle, Worker) and handle.occupies_slot]
        return sorted(found, key=lambda worker: (worker.nr, worker.spawn_id))

    def workers_in(self, *states: WorkerState) -> list[Worker]:
        return [worker for worker in self.workers() if worker.state in states]

    def slot(self, nr: int) -> list[Worker]:
        return [worker for worker in self.workers() if worker.nr == nr]

    def ready_worker(self, nr: int, generation: int | None = None) -> Worker | None:
        for worker in self.slot(nr):
            if worker.ready and (generation is None or worker.generation == generation):
                return worker
        return None

    def state_of(self, generation: int, nr: int) -> WorkerState | None:
        """Last known state of the worker ``nr`` of ``generation``."""
        found = None
        for handle in self:
            if isinstance(handle, Worker) and handle.generation == generation and handle.nr == nr:
                if found is None or handle.spawn_id > found.spawn_id:
                    found = handle
        return found.state if found is not None else None

    def snapshot(self) -> dict[tuple[int, int], WorkerState]:
        """``(generation, nr) -> state`` for every worker still occupying a slot."""
        return {(worker.generation, worker.nr): worker.state for worker in self.workers()}

    def live(self) -> list[ProcessHandle]:
        """Handles the monitor still expects an exit for."""
        return [handle for handle in self if handle.alive]


__all__ = ["Registry"]
