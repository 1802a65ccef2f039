"""Tests for hook execution and child descriptors."""

import pytest

from refork.core.errors import ErrorCategory, SpawnFailure
from refork.supervision.hooks import MoldInfo, ServerContext, WorkerInfo, run_hook

SERVER = ServerContext(settings=None, monitor_pid=1)


class TestRunHook:
    """run_hook behavior."""

    def test_missing_hook_is_a_no_op(self):
        run_hook("after_mold_fork", None, SERVER, MoldInfo(pid=2, generation=0))

    def test_hook_receives_server_and_child(self):
        seen = []
        mold = MoldInfo(pid=2, generation=3)
        run_hook("after_mold_fork", lambda server, child: seen.append((server, child)), SERVER, mold)
        assert seen == [(SERVER, mold)]

    def test_exception_becomes_spawn_failure(self):
        def hook(server, worker):
            raise RuntimeError("database unreachable")

        with pytest.raises(SpawnFailure) as excinfo:
            run_hook("after_worker_fork", hook, SERVER, WorkerInfo(pid=7, nr=1, generation=2))

        error = excinfo.value
        assert "after_worker_fork" in error.message
        assert "database unreachable" in error.message
        assert error.category is ErrorCategory.SPAWN
        assert error.context.kind == "worker"
        assert error.context.nr == 1
        assert error.context.generation == 2
        assert isinstance(error.__cause__, RuntimeError)

    def test_mold_failure_context(self):
        def hook(server, mold):
            raise ValueError("nope")

        with pytest.raises(SpawnFailure) as excinfo:
            run_hook("after_mold_fork", hook, SERVER, MoldInfo(pid=9, generation=1))
        assert excinfo.value.context.kind == "mold"
        assert excinfo.value.context.nr is None

    def test_system_exit_passes_through(self):
        def hook(server, mold):
            raise SystemExit(3)

        with pytest.raises(SystemExit):
            run_hook("after_mold_fork", hook, SERVER, MoldInfo(pid=9, generation=1))


class TestWorkerInfo:
    def test_no_longer_fork_safe_reports(self):
        calls = []
        info = WorkerInfo(pid=1, nr=0, generation=0, _declare_unsafe=lambda: calls.append(True))
        info.no_longer_fork_safe()
        assert calls == [True]

    def test_no_longer_fork_safe_without_reporter(self):
        WorkerInfo(pid=1, nr=0, generation=0).no_longer_fork_safe()
