"""Real process backend built on ``os.fork``.

Monitor-side plumbing::

    signals ──► set_wakeup_fd pipe ─┐
    children ─► SOCK_DGRAM pair ────┼─► selector ─► poll() ─► notifications
    waitpid(-1, WNOHANG) ───────────┘

    commands ─► sendto(<tmpdir>/<kind>-<pid>.sock)

Generation 0 (and any mold spawned without a basis) is forked by the
monitor itself.  Every other child is forked by its basis process as a
sibling; the monitor, registered as child subreaper, adopts and reaps
it.  Without a subreaper reforking is unavailable and adopted workers
are watched by liveness probing instead of ``waitpid``.
"""

from __future__ import annotations

import os
import selectors
import shutil
import signal
import socket
import tempfile
from collections import deque
from typing import Any

from refork.core.errors import SpawnFailure
from refork.core.logging import get_logger
from refork.runtime import platform
from refork.runtime.children import ChildRuntime, MoldProcess, socket_path
from refork.runtime.messages import (
    MAX_DATAGRAM,
    Command,
    MessageError,
    SpawnMold,
    SpawnWorker,
    decode_message,
    encode_command,
)
from refork.runtime.wsgi import WSGIApp
from refork.supervision.hooks import Hooks, ServerContext
from refork.supervision.models import Mold, ProcessHandle, Worker
from refork.supervision.notifications import (
    ChildExited,
    ChildSpawned,
    ControlSignal,
    Notification,
    SignalReceived,
)

logger = get_logger(__name__)

SIGNAL_MAP: dict[int, ControlSignal] = {
    signal.SIGUSR2: ControlSignal.REFORK,
    signal.SIGTERM: ControlSignal.SHUTDOWN,
    signal.SIGINT: ControlSignal.SHUTDOWN,
    signal.SIGQUIT: ControlSignal.SHUTDOWN,
}


class ForkBackend:
    """Spawns and watches real molds and workers."""

    def __init__(
        self,
        settings: Any,
        hooks: Hooks | None = None,
        app: WSGIApp | None = None,
        listeners: list[socket.socket] | None = None,
    ):
        self.settings = settings
        self.hooks = hooks or Hooks()
        self.app = app
        self.listeners = list(listeners or [])
        self.socket_dir: str | None = None
        self._subreaper = False
        self._started = False
        self._selector: selectors.BaseSelector | None = None
        self._monitor_end: socket.socket | None = None
        self._child_end: socket.socket | None = None
        self._sender: socket.socket | None = None
        self._wakeup: tuple[int, int] | None = None
        self._signals: deque[int] = deque()
        self._previous_handlers: dict[int, Any] = {}
        self._direct: set[int] = set()
        self._adopted: set[int] = set()
        self._runtime: ChildRuntime | None = None

    @property
    def reforking_available(self) -> bool:
        return self._subreaper

    # ── Setup / teardown ─────────────────────────────────────────

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._subreaper = platform.set_child_subreaper()
        if not self._subreaper:
            logger.warning("reforking_unavailable", reason="no child subreaper support")

        self.socket_dir = tempfile.mkdtemp(prefix="refork-")
        self._monitor_end, self._child_end = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
        self._monitor_end.setblocking(False)
        self._sender = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
        self._sender.setblocking(False)

        self._wakeup = platform.wakeup_pipe()
        signal.set_wakeup_fd(self._wakeup[1])
        for signum in platform.HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

        self._selector = selectors.DefaultSelector()
        self._selector.register(self._monitor_end, selectors.EVENT_READ, "children")
        self._selector.register(self._wakeup[0], selectors.EVENT_READ, "wakeup")

        monitor_pid = os.getpid()
        self._runtime = ChildRuntime(
            monitor_pid=monitor_pid,
            channel=self._child_end,
            socket_dir=self.socket_dir,
            server=ServerContext(
                settings=self.settings,
                monitor_pid=monitor_pid,
                listen=tuple(getattr(self.settings, "listen", ())),
            ),
            hooks=self.hooks,
            app=self.app,
            listeners=self.listeners,
        )
        logger.debug("fork_backend_started", socket_dir=self.socket_dir, subreaper=self._subreaper)

    def close(self) -> None:
        if not self._started:
            return
        self._started = False
        signal.set_wakeup_fd(-1)
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
        if self._selector is not None:
            self._selector.close()
        for sock in (self._monitor_end, self._child_end, self._sender):
            if sock is not None:
                sock.close()
        if self._wakeup is not None:
            for fd in self._wakeup:
                os.close(fd)
            self._wakeup = None
        if self.socket_dir is not None:
            shutil.rmtree(self.socket_dir, ignore_errors=True)

    def _on_signal(self, signum: int, frame: Any) -> None:
        self._signals.append(signum)

    def _monitor_resources(self) -> list[Any]:
        """What a child forked by the monitor must close."""
        resources: list[Any] = [self._selector, self._monitor_end, self._sender]
        if self._wakeup is not None:
            resources.extend(self._wakeup)
        return [resource for resource in resources if resource is not None]

    # ── Spawning ─────────────────────────────────────────────────

    def spawn_mold(self, mold: Mold, basis: ProcessHandle | None) -> int | None:
        if basis is None:
            child = MoldProcess(self._runtime, mold.spawn_id, mold.generation, inherited=self._monitor_resources())
            try:
                pid = platform.fork_child(child.run)
            except OSError as exc:
                raise SpawnFailure(f"fork failed: {exc}", cause=exc).with_context(
                    kind="mold", generation=mold.generation, spawn_id=mold.spawn_id
                ) from exc
            self._direct.add(pid)
            return pid
        self._send(basis, SpawnMold(mold.spawn_id, mold.generation))
        return None

    def spawn_worker(self, worker: Worker, mold: Mold) -> int | None:
        self._send(mold, SpawnWorker(worker.spawn_id, worker.nr, worker.generation))
        return None

    def _send(self, target: ProcessHandle, command: Command) -> None:
        if target.pid is None or self.socket_dir is None:
            raise SpawnFailure("spawn target has no pid yet").with_context(
                kind=target.kind.value, generation=target.generation
            )
        path = socket_path(self.socket_dir, target.kind, target.pid)
        try:
            self._sender.sendto(encode_command(command), path)
        except OSError as exc:
            raise SpawnFailure(f"cannot reach {target.kind.value} pid={target.pid}: {exc}", cause=exc).with_context(
                kind=target.kind.value, generation=target.generation, pid=target.pid
            ) from exc

    def send_signal(self, pid: int, sig: int) -> None:
        os.kill(pid, sig)

    # ── Polling ──────────────────────────────────────────────────

    def poll(self, timeout: float) -> list[Notification]:
        notifications: list[Notification] = []
        for key, _ in self._selector.select(timeout):
            if key.data == "wakeup":
                platform.drain(key.fd)

        exits = self._reap()
        # Read datagrams after reaping so a child's last report precedes its exit.
        notifications.extend(self._receive())
        notifications.extend(exits)
        notifications.extend(self._signal_notifications())
        return notifications

    def _receive(self) -> list[Notification]:
        messages: list[Notification] = []
        while True:
            try:
                data = self._monitor_end.recv(MAX_DATAGRAM)
            except (BlockingIOError, InterruptedError):
                return messages
            try:
                message = decode_message(data)
            except MessageError as exc:
                logger.warning("bad_child_message", error=str(exc))
                continue
            if isinstance(message, ChildSpawned) and message.pid not in self._direct:
                self._adopted.add(message.pid)
            messages.append(message)

    def _reap(self) -> list[ChildExited]:
        exits: list[ChildExited] = []
        while True:
            try:
                pid, status = os.waitpid(-1, os.WNOHANG)
            except ChildProcessError:
                break
            if pid == 0:
                break
            self._direct.discard(pid)
            self._adopted.discard(pid)
            exits.append(ChildExited(pid, os.waitstatus_to_exitcode(status)))

        if not self._subreaper:
            for pid in list(self._adopted):
                if not platform.pid_alive(pid):
                    self._adopted.discard(pid)
                    exits.append(ChildExited(pid, None))
        return exits

    def _signal_notifications(self) -> list[SignalReceived]:
        received: list[SignalReceived] = []
        while self._signals:
            signum = self._signals.popleft()
            control = SIGNAL_MAP.get(signum)
            if control is not None:
                received.append(SignalReceived(control, signal.Signals(signum).name))
        return received


__all__ = ["ForkBackend", "SIGNAL_MAP"]
