"""Tests for the simulated process backend."""

import signal

import pytest

from refork.core.errors import SpawnFailure
from refork.runtime.memory import MemoryBackend, Outcome, SimClock
from refork.supervision.hooks import Hooks
from refork.supervision.models import ChildKind, Mold, Worker
from refork.supervision.notifications import (
    ChildExited,
    ChildReady,
    ChildSpawned,
    ControlSignal,
    ForkUnsafe,
    RequestsServed,
    SignalReceived,
)


def _mold(spawn_id=1, generation=0, pid=None):
    return Mold(generation=generation, spawn_id=spawn_id, pid=pid)


def _booted(backend):
    """Spawn a ready generation 0 mold and return its handle."""
    mold = _mold()
    mold.pid = backend.spawn_mold(mold, None)
    backend.poll(0)
    return mold


class TestSimClock:
    def test_advance(self):
        clock = SimClock(start=10.0)
        assert clock() == 10.0
        assert clock.advance(2.5) == 12.5
        assert clock() == 12.5


class TestSpawning:
    def test_mold_from_monitor_returns_pid(self):
        backend = MemoryBackend()
        mold = _mold()
        pid = backend.spawn_mold(mold, None)

        assert pid is not None
        assert backend.poll(0) == [ChildSpawned(1, pid, ChildKind.MOLD), ChildReady(1, pid, ChildKind.MOLD)]

    def test_worker_is_reported_not_returned(self):
        backend = MemoryBackend()
        mold = _booted(backend)
        worker = Worker(nr=0, generation=0, spawn_id=2)

        assert backend.spawn_worker(worker, mold) is None
        spawned, ready = backend.poll(0)
        assert isinstance(spawned, ChildSpawned) and spawned.spawn_id == 2
        assert isinstance(ready, ChildReady)
        assert backend.children[spawned.pid].basis_pid == mold.pid

    def test_dead_basis_raises(self):
        backend = MemoryBackend()
        mold = _booted(backend)
        backend.crash(mold.pid)

        with pytest.raises(SpawnFailure):
            backend.spawn_worker(Worker(nr=0, generation=0, spawn_id=2), mold)
        with pytest.raises(SpawnFailure):
            backend.spawn_mold(_mold(spawn_id=3, generation=1), mold)

    def test_scripted_outcomes(self):
        backend = MemoryBackend()
        backend.script(ChildKind.MOLD, Outcome.CRASH, Outcome.NO_SHOW)

        first = backend.spawn_mold(_mold(spawn_id=1), None)
        assert backend.poll(0) == [ChildSpawned(1, first, ChildKind.MOLD), ChildExited(first, 1)]

        backend.spawn_mold(_mold(spawn_id=2), None)
        assert backend.pending == 0

        third = backend.spawn_mold(_mold(spawn_id=3), None)
        assert backend.poll(0)[-1] == ChildReady(3, third, ChildKind.MOLD)

    def test_policy(self):
        backend = MemoryBackend(policy=lambda kind, generation, nr: Outcome.HANG)
        pid = backend.spawn_mold(_mold(), None)
        assert backend.poll(0) == [ChildSpawned(1, pid, ChildKind.MOLD)]
        assert backend.children[pid].alive

    def test_failing_hook_exits_child(self):
        def after_mold_fork(server, mold):
            raise RuntimeError("nope")

        backend = MemoryBackend(hooks=Hooks(after_mold_fork=after_mold_fork))
        pid = backend.spawn_mold(_mold(), None)
        assert backend.poll(0)[-1] == ChildExited(pid, 1)

    def test_hook_exit_status(self):
        def after_mold_fork(server, mold):
            raise SystemExit(4)

        backend = MemoryBackend(hooks=Hooks(after_mold_fork=after_mold_fork))
        pid = backend.spawn_mold(_mold(), None)
        assert backend.poll(0)[-1] == ChildExited(pid, 4)

    def test_worker_declares_fork_unsafe(self):
        backend = MemoryBackend(hooks=Hooks(after_worker_fork=lambda server, worker: worker.no_longer_fork_safe()))
        mold = _booted(backend)
        backend.spawn_worker(Worker(nr=0, generation=0, spawn_id=2), mold)
        spawned, unsafe, ready = backend.poll(0)
        assert unsafe == ForkUnsafe(spawned.pid)
        assert isinstance(ready, ChildReady)


class TestSignalsAndTraffic:
    def test_term_and_kill(self):
        backend = MemoryBackend()
        mold = _booted(backend)

        backend.send_signal(mold.pid, signal.SIGTERM)
        assert backend.poll(0) == [ChildExited(mold.pid, 0)]
        with pytest.raises(ProcessLookupError):
            backend.send_signal(mold.pid, signal.SIGTERM)
        with pytest.raises(ProcessLookupError):
            backend.send_signal(99999, signal.SIGKILL)

    def test_ignored_term(self):
        backend = MemoryBackend()
        mold = _booted(backend)
        backend.children[mold.pid].ignores_term = True

        backend.send_signal(mold.pid, signal.SIGTERM)
        assert backend.pending == 0
        backend.send_signal(mold.pid, signal.SIGKILL)
        assert backend.poll(0) == [ChildExited(mold.pid, -signal.SIGKILL)]
        assert backend.signals_sent == [(mold.pid, signal.SIGTERM), (mold.pid, signal.SIGKILL)]

    def test_round_robin_requests(self):
        backend = MemoryBackend()
        mold = _booted(backend)
        for nr in range(2):
            backend.spawn_worker(Worker(nr=nr, generation=0, spawn_id=2 + nr), mold)
        backend.poll(0)

        assert backend.serve_requests(5) == 5
        served = [n for n in backend.poll(0) if isinstance(n, RequestsServed)]
        assert [(n.nr, n.count) for n in served] == [(0, 1), (1, 1), (0, 2), (1, 2), (0, 3)]
        assert backend.serve_requests(2, nr=1) == 2
        assert backend.ready_workers(1)[0].requests == 4

    def test_no_workers_no_traffic(self):
        backend = MemoryBackend()
        _booted(backend)
        assert backend.serve_requests(3) == 0
        assert backend.probe() is False

    def test_deliver_signal_defaults(self):
        backend = MemoryBackend()
        backend.deliver_signal(ControlSignal.REFORK)
        backend.deliver_signal(ControlSignal.SHUTDOWN)
        assert backend.poll(0) == [
            SignalReceived(ControlSignal.REFORK, "SIGUSR2"),
            SignalReceived(ControlSignal.SHUTDOWN, "SIGTERM"),
        ]

    def test_empty_poll_advances_clock(self):
        clock = SimClock()
        backend = MemoryBackend(clock=clock)
        assert backend.poll(0.5) == []
        assert clock() == 0.5
