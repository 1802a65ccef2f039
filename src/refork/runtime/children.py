"""Code that runs inside molds and workers.

A child boots the same way whatever its role::

    fork ─► close what the parent held ─► reset signals ─► bind command socket
         ─► report "spawned" ─► run hook ─► report "ready" ─► serve / wait

Molds wait for ``spawn_worker`` / ``spawn_mold`` commands and fork the
requested child as a sibling (the monitor adopts it).  Workers accept
connections on the inherited listeners, report their request count after
every request, and fork a new mold from themselves when promoted.

Children exit through ``os._exit`` and also exit when the monitor is gone.

Application code inside a child may call :func:`no_longer_fork_safe` to
disable reforking for the whole tree.
"""

from __future__ import annotations

import gc
import os
import selectors
import signal
import socket
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from refork.core.errors import SpawnFailure
from refork.core.logging import bind_context, clear_context, get_logger
from refork.runtime import platform
from refork.runtime.messages import (
    MAX_DATAGRAM,
    ChildMessage,
    Command,
    MessageError,
    SpawnMold,
    SpawnWorker,
    decode_command,
    encode_message,
)
from refork.runtime.wsgi import ConnectionServer, WSGIApp, accept
from refork.supervision.hooks import Hooks, MoldInfo, ServerContext, WorkerInfo, run_hook
from refork.supervision.models import ChildKind
from refork.supervision.notifications import ChildReady, ChildSpawned, ForkUnsafe, RequestsServed

logger = get_logger(__name__)

POLL_INTERVAL = 1.0

_fork_unsafe_reporter: Callable[[], None] | None = None


def set_fork_unsafe_reporter(reporter: Callable[[], None] | None) -> Callable[[], None] | None:
    """Install the callable :func:`no_longer_fork_safe` forwards to; returns the previous one."""
    global _fork_unsafe_reporter
    previous = _fork_unsafe_reporter
    _fork_unsafe_reporter = reporter
    return previous


def no_longer_fork_safe() -> bool:
    """Permanently disable reforking for this process tree.

    Call it from application code after starting something that cannot
    survive a fork (background threads holding locks, native clients).
    Returns False when called outside a supervised child.
    """
    if _fork_unsafe_reporter is None:
        logger.warning("fork_unsafe_outside_child", pid=os.getpid())
        return False
    _fork_unsafe_reporter()
    return True


def socket_path(directory: str, kind: ChildKind, pid: int) -> str:
    """Where a child of *kind* with *pid* receives monitor commands."""
    return os.path.join(directory, f"{kind.value}-{pid}.sock")


@dataclass
class ChildRuntime:
    """Everything a child inherits from the monitor."""

    monitor_pid: int
    channel: socket.socket
    socket_dir: str
    server: ServerContext
    hooks: Hooks = field(default_factory=Hooks)
    app: WSGIApp | None = None
    listeners: list[socket.socket] = field(default_factory=list)


def _close(resource: Any) -> None:
    try:
        if isinstance(resource, int):
            os.close(resource)
        else:
            resource.close()
    except OSError:
        pass


class ChildProcess:
    """Common boot sequence and event loop of molds and workers."""

    kind: ChildKind

    def __init__(self, runtime: ChildRuntime, spawn_id: int, generation: int, inherited: Iterable[Any] = ()):
        self.runtime = runtime
        self.spawn_id = spawn_id
        self.generation = generation
        self.pid = 0
        self.stopping = False
        self._inherited = list(inherited)
        self._command: socket.socket | None = None
        self._command_path: str | None = None
        self._wakeup: tuple[int, int] | None = None
        self._selector: selectors.BaseSelector | None = None

    # ── Entry point ──────────────────────────────────────────────

    def run(self) -> None:
        """Run in the freshly forked process; never returns normally."""
        sys.exit(self.main())

    def main(self) -> int:
        self._boot()
        try:
            try:
                self.start()
            except SpawnFailure as exc:
                logger.error("child_start_failed", **exc.to_dict())
                return 1
            self.report(ChildReady(self.spawn_id, self.pid, self.kind))
            return self.loop()
        finally:
            self._cleanup()

    def _boot(self) -> None:
        self.pid = os.getpid()
        platform.reset_signals()
        for resource in self._inherited:
            _close(resource)
        self._inherited = []

        clear_context()
        bind_context(**self.log_context())
        set_fork_unsafe_reporter(self.declare_fork_unsafe)

        self._wakeup = platform.wakeup_pipe()
        signal.set_wakeup_fd(self._wakeup[1])
        for signum in (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT):
            signal.signal(signum, self._on_stop_signal)
        signal.signal(signal.SIGUSR2, signal.SIG_IGN)

        self._command_path = socket_path(self.runtime.socket_dir, self.kind, self.pid)
        self._command = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        self._command.bind(self._command_path)
        self._command.setblocking(False)

        self.report(ChildSpawned(self.spawn_id, self.pid, self.kind))

    def log_context(self) -> dict[str, Any]:
        return {"role": self.kind.value, "pid": self.pid, "generation": self.generation}

    def _cleanup(self) -> None:
        if self._command_path is not None:
            try:
                os.unlink(self._command_path)
            except FileNotFoundError:
                pass

    # ── Overridable steps ────────────────────────────────────────

    def start(self) -> None:
        """Run the post-fork hook; raise SpawnFailure to abort."""

    def register(self, selector: selectors.BaseSelector) -> None:
        """Register role-specific file objects."""

    def on_readable(self, key: selectors.SelectorKey) -> None:
        pass

    def on_command(self, command: Command) -> None:
        pass

    def finish(self) -> int:
        return 0

    # ── Plumbing ─────────────────────────────────────────────────

    def report(self, message: ChildMessage) -> None:
        try:
            self.runtime.channel.send(encode_message(message))
        except OSError as exc:
            logger.warning("report_failed", message=type(message).__name__, error=str(exc))

    def declare_fork_unsafe(self) -> None:
        logger.warning("declared_fork_unsafe")
        self.report(ForkUnsafe(self.pid))

    def _on_stop_signal(self, signum: int, frame: Any) -> None:
        self.stopping = True

    def inheritable(self) -> list[Any]:
        """Resources a process forked from this one must close."""
        resources = [self._selector, self._command, *(self._wakeup or ())]
        return [resource for resource in resources if resource is not None]

    def fork(self, child: ChildProcess) -> None:
        platform.fork_sibling(child.run)

    def _read_commands(self) -> None:
        while self._command is not None:
            try:
                data = self._command.recv(MAX_DATAGRAM)
            except (BlockingIOError, InterruptedError):
                return
            try:
                command = decode_command(data)
            except MessageError as exc:
                logger.warning("bad_command", error=str(exc))
                continue
            self.on_command(command)

    def loop(self) -> int:
        self._selector = selectors.DefaultSelector()
        self._selector.register(self._wakeup[0], selectors.EVENT_READ, "wakeup")
        self._selector.register(self._command, selectors.EVENT_READ, "command")
        self.register(self._selector)

        while not self.stopping:
            for key, _ in self._selector.select(timeout=POLL_INTERVAL):
                if key.data == "wakeup":
                    platform.drain(key.fd)
                elif key.data == "command":
                    self._read_commands()
                elif not self.stopping:
                    self.on_readable(key)
            if not platform.pid_alive(self.runtime.monitor_pid):
                logger.warning("monitor_gone", monitor_pid=self.runtime.monitor_pid)
                break
        return self.finish()


class MoldProcess(ChildProcess):
    """Forks workers (and the next mold) on command; never serves."""

    kind = ChildKind.MOLD

    def start(self) -> None:
        run_hook("after_mold_fork", self.runtime.hooks.after_mold_fork, self.runtime.server, MoldInfo(self.pid, self.generation))
        # Keep long-lived objects out of the collector so children share their pages.
        gc.collect()
        gc.freeze()
        logger.info("mold_ready")

    def on_command(self, command: Command) -> None:
        if isinstance(command, SpawnWorker):
            child: ChildProcess = WorkerProcess(
                self.runtime, command.spawn_id, command.nr, command.generation, inherited=self.inheritable()
            )
        else:
            child = MoldProcess(self.runtime, command.spawn_id, command.generation, inherited=self.inheritable())
        self.fork(child)


class WorkerProcess(ChildProcess):
    """Serves requests on the inherited listeners."""

    kind = ChildKind.WORKER

    def __init__(self, runtime: ChildRuntime, spawn_id: int, nr: int, generation: int, inherited: Iterable[Any] = ()):
        super().__init__(runtime, spawn_id, generation, inherited)
        self.nr = nr
        self.requests = 0
        self.info: WorkerInfo | None = None
        self._servers: dict[int, ConnectionServer] = {}

    def log_context(self) -> dict[str, Any]:
        context = super().log_context()
        context["nr"] = self.nr
        return context

    def start(self) -> None:
        self.info = WorkerInfo(self.pid, self.nr, self.generation, _declare_unsafe=self.declare_fork_unsafe)
        run_hook("after_worker_fork", self.runtime.hooks.after_worker_fork, self.runtime.server, self.info)
        if self.runtime.app is not None:
            for listener in self.runtime.listeners:
                self._servers[listener.fileno()] = ConnectionServer(self.runtime.app, listener)
        logger.info("worker_started", listeners=len(self._servers))

    def register(self, selector: selectors.BaseSelector) -> None:
        for listener in self.runtime.listeners:
            if listener.fileno() in self._servers:
                selector.register(listener, selectors.EVENT_READ, "listener")

    def on_readable(self, key: selectors.SelectorKey) -> None:
        accepted = accept(key.fileobj)
        if accepted is None:
            return
        connection, client_address = accepted
        self._servers[key.fd].serve_connection(connection, client_address)
        self.requests += 1
        if self.info is not None:
            self.info.requests = self.requests
        self.report(RequestsServed(self.pid, self.nr, self.generation, self.requests))

    def on_command(self, command: Command) -> None:
        if isinstance(command, SpawnMold):
            logger.info("promoting_to_mold", new_generation=command.generation, requests=self.requests)
            self.fork(MoldProcess(self.runtime, command.spawn_id, command.generation, inherited=self.inheritable()))
        else:
            logger.warning("unexpected_command", command=type(command).__name__)

    def finish(self) -> int:
        if self.info is not None:
            try:
                run_hook("before_worker_exit", self.runtime.hooks.before_worker_exit, self.runtime.server, self.info)
            except SpawnFailure as exc:
                logger.error("before_worker_exit_failed", **exc.to_dict())
        logger.info("worker_exiting", requests=self.requests)
        return 0


__all__ = [
    "POLL_INTERVAL",
    "set_fork_unsafe_reporter",
    "no_longer_fork_safe",
    "socket_path",
    "ChildRuntime",
    "ChildProcess",
    "MoldProcess",
    "WorkerProcess",
]
