"""Tests for supervisor events, sinks and their text projection."""

from __future__ import annotations

import pytest

from refork.supervision.events import (
    EventEmitter,
    EventType,
    LoggingSink,
    MemorySink,
    RejectReason,
    SupervisorEvent,
    format_event,
)
from refork.supervision.models import ReapReason


def _event(event_type: EventType, **data) -> SupervisorEvent:
    return SupervisorEvent(event_type, 0.0, data)


class RecordingLogger:
    def __init__(self):
        self.calls = []

    def __getattr__(self, level):
        def log(message, **fields):
            self.calls.append((level, message, fields))

        return log


class TestFormatEvent:
    """The one-line texts operators grep for."""

    @pytest.mark.parametrize(
        "event_type, data, expected",
        [
            (EventType.CHILD_READY, {"kind": "worker", "nr": 0, "generation": 1, "pid": 5}, "worker=0 gen=1 ready"),
            (EventType.CHILD_READY, {"kind": "mold", "nr": None, "generation": 1, "pid": 5}, "mold pid=5 gen=1 ready"),
            (EventType.CHILD_SPAWNED, {"kind": "mold", "generation": 1, "pid": 5}, "mold pid=5 gen=1 spawned"),
            (
                EventType.CHILD_REAPED,
                {"kind": "mold", "generation": 1, "pid": 5, "reason": ReapReason.CRASHED, "status": 1},
                "mold pid=5 gen=1 reaped (crashed, status=1)",
            ),
            (
                EventType.REFORK_TRIGGERED,
                {"source": "condition", "nr": 1, "basis_generation": 0, "generation": 1},
                "worker=1 gen=0: Refork condition met, promoting ourselves to gen=1",
            ),
            (EventType.REFORK_TRIGGERED, {"source": "signal", "generation": 3}, "Refork requested, spawning mold gen=3"),
            (
                EventType.SPAWN_FAILED,
                {"kind": "worker", "retry_count": 1},
                "Failed to spawn a worker. Retrying.",
            ),
            (
                EventType.SPAWN_FAILED,
                {"kind": "worker", "retry_count": 2},
                "Failed to spawn a worker twice in a row. Corrupted mold process?",
            ),
            (
                EventType.SPAWN_FAILED,
                {"kind": "mold", "generation": 1, "retry_count": 1, "delay": 10.0},
                "Failed to spawn a mold gen=1. Retrying in 10.0s.",
            ),
            (EventType.FATAL, {"reason": "no-live-mold"}, "No mold alive, shutting down"),
            (
                EventType.WORKER_TERMINATE_SENT,
                {"kind": "worker", "nr": 0, "pid": 9, "generation": 0},
                "Sent SIGTERM to worker=0 pid=9 gen=0",
            ),
            (
                EventType.WORKER_REGISTERED,
                {"kind": "worker", "nr": 0, "pid": 9, "generation": 1},
                "worker=0 pid=9 gen=1 registered",
            ),
            (EventType.MOLD_RETIRED, {"kind": "mold", "pid": 3, "generation": 0}, "Terminating old mold pid=3 gen=0"),
            (EventType.ROLLOUT_COMPLETED, {"generation": 2, "replaced": 2}, "All workers rolled over to gen=2"),
            (EventType.SHUTDOWN_STARTED, {"signame": "SIGTERM", "reason": "signal"}, "SIGTERM received, shutting down"),
            (EventType.SHUTDOWN_STARTED, {"signame": None, "reason": "no-live-mold"}, "Shutting down (no-live-mold)"),
            (EventType.SHUTDOWN_COMPLETED, {"exit_code": 1}, "Shutdown complete, exit status 1"),
        ],
    )
    def test_texts(self, event_type, data, expected):
        assert format_event(_event(event_type, **data)) == expected

    def test_fork_unsafe_rejection_names_the_worker(self):
        event = _event(EventType.REFORK_REJECTED, reason=RejectReason.FORK_UNSAFE, disabled_by=4242, disabled_by_nr=1)
        assert format_event(event) == "worker=1 pid=4242 is no longer fork safe, can't refork"

    def test_fork_unsafe_rejection_without_worker(self):
        event = _event(EventType.REFORK_REJECTED, reason=RejectReason.FORK_UNSAFE, disabled_by=7, disabled_by_nr=None)
        assert format_event(event) == "pid=7 is no longer fork safe, can't refork"

    def test_every_event_type_has_a_text(self):
        for event_type in EventType:
            assert isinstance(format_event(_event(event_type)), str)


class TestSupervisorEvent:
    def test_to_dict_unwraps_enums(self):
        event = _event(EventType.CHILD_REAPED, reason=ReapReason.TIMEOUT, pid=1)
        assert event.to_dict() == {
            "event_type": "child_reaped",
            "timestamp": 0.0,
            "data": {"reason": "timeout", "pid": 1},
        }
        assert event.get("pid") == 1
        assert event.get("missing", "x") == "x"


class TestSinks:
    def test_emitter_stamps_with_clock(self):
        sink = MemorySink()
        emitter = EventEmitter(sink, clock=lambda: 42.0)
        event = emitter.emit(EventType.FATAL, reason="no-live-mold")
        assert event.timestamp == 42.0
        assert sink.events == [event]
        assert sink.types() == [EventType.FATAL]
        assert sink.lines() == ["No mold alive, shutting down"]
        sink.clear()
        assert sink.events == []

    def test_memory_sink_filters(self):
        sink = MemorySink()
        emitter = EventEmitter(sink)
        emitter.emit(EventType.ROLLOUT_COMPLETED, generation=1)
        emitter.emit(EventType.FATAL)
        assert [e.event_type for e in sink.of_type(EventType.FATAL)] == [EventType.FATAL]

    def test_logging_sink_levels(self):
        logger = RecordingLogger()
        sink = LoggingSink(logger)
        sink.write(_event(EventType.FATAL, reason="no-live-mold"))
        sink.write(_event(EventType.CHILD_REAPED, kind="worker", nr=0, pid=1, generation=0, reason=ReapReason.CRASHED))
        sink.write(_event(EventType.ROLLOUT_COMPLETED, generation=1))
        levels = [call[0] for call in logger.calls]
        assert levels == ["critical", "warning", "info"]
        level, message, fields = logger.calls[1]
        assert message.startswith("worker=0 pid=1 gen=0 reaped")
        assert fields["event_type"] == "child_reaped"
        assert fields["reason"] == "crashed"
