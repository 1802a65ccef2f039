"""Supervisor events: the observable record of everything the monitor does.

WHY
───
Tests, operators and tooling need to know *what happened* (a mold was
reaped, a refork was rejected) without parsing log prose.  The core
emits structured :class:`SupervisorEvent` values; log text is a thin
projection produced by :func:`format_event`.

ARCHITECTURE
────────────
::

    SupervisorEvent
      ├── event_type  ─ EventType value
      ├── timestamp   ─ loop clock reading
      └── data        ─ pid / generation / kind / nr / reason ...

    EventEmitter ──► EventSink
                       ├── MemorySink   (tests, introspection)
                       └── LoggingSink  (structlog, text via format_event)

Events are append-only; never update or delete.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from refork.core.logging import get_logger


class EventType(str, Enum):
    """Every event the supervisor emits."""

    CHILD_SPAWNED = "child_spawned"
    CHILD_READY = "child_ready"
    CHILD_REAPED = "child_reaped"
    REFORK_TRIGGERED = "refork_triggered"
    REFORK_REJECTED = "refork_rejected"
    SPAWN_FAILED = "spawn_failed"
    SPAWN_TIMEOUT = "spawn_timeout"
    FATAL = "fatal"
    WORKER_TERMINATE_SENT = "worker_terminate_sent"
    WORKER_REGISTERED = "worker_registered"
    MOLD_RETIRED = "mold_retired"
    TRANSITION_ABANDONED = "transition_abandoned"
    ROLLOUT_COMPLETED = "rollout_completed"
    FORK_SAFETY_DISABLED = "fork_safety_disabled"
    SHUTDOWN_STARTED = "shutdown_started"
    SHUTDOWN_COMPLETED = "shutdown_completed"


class RejectReason(str, Enum):
    """Why a refork request was dropped."""

    FORK_UNSAFE = "fork-unsafe"
    IN_PROGRESS = "in-progress"
    UNAVAILABLE = "unavailable"
    SHUTTING_DOWN = "shutting-down"


@dataclass(frozen=True)
class SupervisorEvent:
    """One entry of the event stream.

    Example:
        >>> event = SupervisorEvent(EventType.CHILD_READY, 12.5, {"kind": "worker", "nr": 0, "generation": 1})
        >>> format_event(event)
        'worker=0 gen=1 ready'
    """

    event_type: EventType
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/storage."""
        return {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "data": {
                key: value.value if isinstance(value, Enum) else value
                for key, value in self.data.items()
            },
        }


# =============================================================================
# TEXT PROJECTION
# =============================================================================


def _child_label(data: dict[str, Any]) -> str:
    if data.get("kind") == "worker":
        return f"worker={data.get('nr')} pid={data.get('pid')} gen={data.get('generation')}"
    return f"mold pid={data.get('pid')} gen={data.get('generation')}"


def _value(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    return value.value if isinstance(value, Enum) else value


def _format_spawned(data: dict[str, Any]) -> str:
    return f"{_child_label(data)} spawned"


def _format_ready(data: dict[str, Any]) -> str:
    if data.get("kind") == "worker":
        return f"worker={data.get('nr')} gen={data.get('generation')} ready"
    return f"mold pid={data.get('pid')} gen={data.get('generation')} ready"


def _format_reaped(data: dict[str, Any]) -> str:
    return f"{_child_label(data)} reaped ({_value(data, 'reason')}, status={data.get('status')})"


def _format_triggered(data: dict[str, Any]) -> str:
    if data.get("source") == "condition":
        return (
            f"worker={data.get('nr')} gen={data.get('basis_generation')}: "
            f"Refork condition met, promoting ourselves to gen={data.get('generation')}"
        )
    return f"Refork requested, spawning mold gen={data.get('generation')}"


def _format_rejected(data: dict[str, Any]) -> str:
    reason = _value(data, "reason")
    if reason == RejectReason.FORK_UNSAFE.value:
        culprit = data.get("disabled_by")
        if culprit is None:
            who = "A child"
        elif data.get("disabled_by_nr") is not None:
            who = f"worker={data['disabled_by_nr']} pid={culprit}"
        else:
            who = f"pid={culprit}"
        return f"{who} is no longer fork safe, can't refork"
    if reason == RejectReason.IN_PROGRESS.value:
        return "Refork already in progress, ignoring request"
    if reason == RejectReason.UNAVAILABLE.value:
        return "Reforking is not available on this platform, ignoring request"
    return "Shutting down, ignoring refork request"


def _format_spawn_failed(data: dict[str, Any]) -> str:
    retry_count = data.get("retry_count", 1)
    if data.get("kind") == "worker":
        if retry_count >= 2:
            return "Failed to spawn a worker twice in a row. Corrupted mold process?"
        return "Failed to spawn a worker. Retrying."
    if retry_count >= 2:
        return f"Failed to spawn a mold gen={data.get('generation')} twice in a row."
    return f"Failed to spawn a mold gen={data.get('generation')}. Retrying in {data.get('delay')}s."


def _format_spawn_timeout(data: dict[str, Any]) -> str:
    return f"{_child_label(data)} not ready after {data.get('timeout')}s, killing it"


def _format_fatal(data: dict[str, Any]) -> str:
    return "No mold alive, shutting down"


def _format_terminate_sent(data: dict[str, Any]) -> str:
    return f"Sent SIGTERM to worker={data.get('nr')} pid={data.get('pid')} gen={data.get('generation')}"


def _format_registered(data: dict[str, Any]) -> str:
    return f"worker={data.get('nr')} pid={data.get('pid')} gen={data.get('generation')} registered"


def _format_retired(data: dict[str, Any]) -> str:
    return f"Terminating old mold pid={data.get('pid')} gen={data.get('generation')}"


def _format_abandoned(data: dict[str, Any]) -> str:
    return (
        f"Giving up on mold gen={data.get('generation')}, "
        f"gen={data.get('serving_generation')} keeps serving; backing off {data.get('delay')}s"
    )


def _format_rollout(data: dict[str, Any]) -> str:
    return f"All workers rolled over to gen={data.get('generation')}"


def _format_unsafe(data: dict[str, Any]) -> str:
    return f"pid={data.get('pid')} marked itself fork unsafe, reforking disabled"


def _format_shutdown_started(data: dict[str, Any]) -> str:
    signame = data.get("signame")
    if signame:
        return f"{signame} received, shutting down"
    return f"Shutting down ({data.get('reason')})"


def _format_shutdown_completed(data: dict[str, Any]) -> str:
    return f"Shutdown complete, exit status {data.get('exit_code')}"


_FORMATTERS: dict[EventType, Callable[[dict[str, Any]], str]] = {
    EventType.CHILD_SPAWNED: _format_spawned,
    EventType.CHILD_READY: _format_ready,
    EventType.CHILD_REAPED: _format_reaped,
    EventType.REFORK_TRIGGERED: _format_triggered,
    EventType.REFORK_REJECTED: _format_rejected,
    EventType.SPAWN_FAILED: _format_spawn_failed,
    EventType.SPAWN_TIMEOUT: _format_spawn_timeout,
    EventType.FATAL: _format_fatal,
    EventType.WORKER_TERMINATE_SENT: _format_terminate_sent,
    EventType.WORKER_REGISTERED: _format_registered,
    EventType.MOLD_RETIRED: _format_retired,
    EventType.TRANSITION_ABANDONED: _format_abandoned,
    EventType.ROLLOUT_COMPLETED: _format_rollout,
    EventType.FORK_SAFETY_DISABLED: _format_unsafe,
    EventType.SHUTDOWN_STARTED: _format_shutdown_started,
    EventType.SHUTDOWN_COMPLETED: _format_shutdown_completed,
}


def format_event(event: SupervisorEvent) -> str:
    """Render an event as the one-line text operators grep for."""
    return _FORMATTERS[event.event_type](event.data)


# =============================================================================
# SINKS
# =============================================================================


class EventSink(Protocol):
    """Anything that accepts supervisor events."""

    def write(self, event: SupervisorEvent) -> None: ...


class MemorySink:
    """Keeps every event in a list.  Used by tests and ``ControlLoop.events``."""

    def __init__(self) -> None:
        self.events: list[SupervisorEvent] = []

    def write(self, event: SupervisorEvent) -> None:
        self.events.append(event)

    def of_type(self, *event_types: EventType) -> list[SupervisorEvent]:
        return [event for event in self.events if event.event_type in event_types]

    def types(self) -> list[EventType]:
        return [event.event_type for event in self.events]

    def lines(self) -> list[str]:
        return [format_event(event) for event in self.events]

    def clear(self) -> None:
        self.events.clear()


_LEVELS: dict[EventType, str] = {
    EventType.CHILD_REAPED: "info",
    EventType.REFORK_REJECTED: "warning",
    EventType.SPAWN_FAILED: "error",
    EventType.SPAWN_TIMEOUT: "error",
    EventType.FATAL: "critical",
    EventType.TRANSITION_ABANDONED: "error",
    EventType.FORK_SAFETY_DISABLED: "warning",
}


class LoggingSink:
    """Writes events through structlog.

    The rendered text is the log message; the event's data rides along
    as structured fields so JSON output stays machine readable.
    """

    def __init__(self, logger: Any = None) -> None:
        self._logger = logger if logger is not None else get_logger("refork.supervisor")

    def write(self, event: SupervisorEvent) -> None:
        level = _LEVELS.get(event.event_type, "info")
        if event.event_type is EventType.CHILD_REAPED and event.get("reason") == "crashed":
            level = "warning"
        fields = event.to_dict()["data"]
        getattr(self._logger, level)(format_event(event), event_type=event.event_type.value, **fields)


class EventEmitter:
    """Stamps events with the loop clock and hands them to a sink."""

    def __init__(self, sink: EventSink, clock: Callable[[], float] = time.monotonic) -> None:
        self.sink = sink
        self._clock = clock

    def emit(self, event_type: EventType, **data: Any) -> SupervisorEvent:
        event = SupervisorEvent(event_type=event_type, timestamp=self._clock(), data=data)
        self.sink.write(event)
        return event


__all__ = [
    "EventType",
    "RejectReason",
    "SupervisorEvent",
    "format_event",
    "EventSink",
    "MemorySink",
    "LoggingSink",
    "EventEmitter",
]
