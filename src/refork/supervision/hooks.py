"""Lifecycle hooks and the descriptors passed to them.

Hooks are plain callables registered on :class:`Hooks`.  They run inside
the freshly forked child, synchronously, before it reports ready::

    def after_mold_fork(server, mold):
        if mold.generation > 0:
            reconnect_database()

    def after_worker_fork(server, worker):
        if worker.nr == 0:
            start_background_thread()
            worker.no_longer_fork_safe()

Any exception raised inside a hook becomes a :class:`SpawnFailure` for
that child.  A hook that exits the process (``sys.exit``) is seen by the
monitor as the child exiting before ready, which is the same failure.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from refork.core.errors import SpawnFailure
from refork.core.logging import get_logger

logger = get_logger(__name__)

HOOK_NAMES = ("after_mold_fork", "after_worker_fork", "before_worker_exit")

Hook = Callable[[Any, Any], Any]


@dataclass(frozen=True)
class Hooks:
    """Registered hook callables; ``None`` means no hook."""

    after_mold_fork: Hook | None = None
    after_worker_fork: Hook | None = None
    before_worker_exit: Hook | None = None


@dataclass(frozen=True)
class ServerContext:
    """What hooks see as ``server``."""

    settings: Any
    monitor_pid: int
    listen: tuple[str, ...] = ()


@dataclass
class MoldInfo:
    """Descriptor of a mold, passed to ``after_mold_fork``."""

    pid: int
    generation: int


@dataclass
class WorkerInfo:
    """Descriptor of a worker, passed to worker hooks."""

    pid: int
    nr: int
    generation: int
    requests: int = 0
    _declare_unsafe: Callable[[], None] | None = field(default=None, repr=False, compare=False)

    def no_longer_fork_safe(self) -> None:
        """Permanently disable reforking for the whole process tree."""
        if self._declare_unsafe is not None:
            self._declare_unsafe()


def run_hook(name: str, hook: Hook | None, server: ServerContext, child: MoldInfo | WorkerInfo) -> None:
    """Run one hook, converting any exception into :class:`SpawnFailure`.

    ``SystemExit`` is not caught: a hook that exits ends the child.
    """
    if hook is None:
        return
    try:
        hook(server, child)
    except Exception as exc:
        logger.error("hook_failed", hook=name, error=f"{type(exc).__name__}: {exc}")
        kind = "mold" if isinstance(child, MoldInfo) else "worker"
        raise SpawnFailure(f"{name} hook raised {type(exc).__name__}: {exc}", cause=exc).with_context(
            kind=kind,
            generation=child.generation,
            pid=child.pid,
            nr=getattr(child, "nr", None),
        ) from exc


__all__ = [
    "HOOK_NAMES",
    "Hook",
    "Hooks",
    "ServerContext",
    "MoldInfo",
    "WorkerInfo",
    "run_hook",
]
