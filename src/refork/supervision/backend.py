"""ProcessBackend protocol: how the control loop creates and watches children.

The loop never calls ``os.fork`` itself.  It asks a backend to spawn a
mold from a basis (a worker, another mold, or the monitor when the basis
is ``None``) or a worker from a mold, and learns what happened through
``poll()``.

Implementations:
    - ``refork.runtime.fork.ForkBackend``: real processes, Linux subreaper
    - ``refork.runtime.memory.MemoryBackend``: simulated children for tests

Contract:
    - ``spawn_mold`` / ``spawn_worker`` return the child pid when the
      monitor forked it directly, ``None`` when another process forks it
      and the pid arrives later as ``ChildSpawned``.  They raise
      :class:`~refork.core.errors.SpawnFailure` if the request could not
      even be issued.
    - The child runs its hook, then reports ``ChildReady``.  A child that
      fails its hook exits non-zero and shows up as ``ChildExited``.
    - ``poll`` blocks at most ``timeout`` seconds.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from refork.supervision.models import Mold, ProcessHandle, Worker
from refork.supervision.notifications import Notification


@runtime_checkable
class ProcessBackend(Protocol):
    """Protocol every process backend implements."""

    @property
    def reforking_available(self) -> bool:
        """Whether molds may be forked from workers and other molds."""
        ...

    def start(self) -> None:
        """Prepare the backend (signals, sockets) before the first spawn."""
        ...

    def spawn_mold(self, mold: Mold, basis: ProcessHandle | None) -> int | None:
        ...

    def spawn_worker(self, worker: Worker, mold: Mold) -> int | None:
        ...

    def send_signal(self, pid: int, sig: int) -> None:
        """Deliver *sig*; raises ``ProcessLookupError`` if the pid is gone."""
        ...

    def poll(self, timeout: float) -> list[Notification]:
        ...

    def close(self) -> None:
        ...


__all__ = ["ProcessBackend"]
