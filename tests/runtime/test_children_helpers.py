"""Tests for the helpers application code uses inside children."""

import pytest

import refork
from refork.runtime.children import no_longer_fork_safe, set_fork_unsafe_reporter, socket_path
from refork.supervision.models import ChildKind


@pytest.fixture(autouse=True)
def _no_reporter():
    previous = set_fork_unsafe_reporter(None)
    yield
    set_fork_unsafe_reporter(previous)


def test_socket_path():
    assert socket_path("/tmp/refork-x", ChildKind.WORKER, 42) == "/tmp/refork-x/worker-42.sock"
    assert socket_path("/tmp/refork-x", ChildKind.MOLD, 7) == "/tmp/refork-x/mold-7.sock"


def test_outside_a_child_is_a_no_op():
    assert no_longer_fork_safe() is False


def test_forwards_to_the_reporter():
    calls = []
    set_fork_unsafe_reporter(lambda: calls.append("unsafe"))
    assert refork.no_longer_fork_safe() is True
    assert calls == ["unsafe"]


def test_set_reporter_returns_previous():
    def first():
        pass

    assert set_fork_unsafe_reporter(first) is None
    assert set_fork_unsafe_reporter(None) is first
