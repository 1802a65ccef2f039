"""Reforking orchestration: molds, workers, rollouts and the control loop."""

from refork.supervision.condition import ReforkCondition
from refork.supervision.control import EXIT_NO_MOLD, EXIT_OK, ControlLoop
from refork.supervision.events import (
    EventType,
    LoggingSink,
    MemorySink,
    RejectReason,
    SupervisorEvent,
    format_event,
)
from refork.supervision.fork_safety import ForkSafety
from refork.supervision.hooks import Hooks, MoldInfo, ServerContext, WorkerInfo
from refork.supervision.models import ChildKind, Mold, MoldState, ReapReason, Worker, WorkerState

__all__ = [
    "ControlLoop",
    "EXIT_OK",
    "EXIT_NO_MOLD",
    "ReforkCondition",
    "EventType",
    "RejectReason",
    "SupervisorEvent",
    "MemorySink",
    "LoggingSink",
    "format_event",
    "ForkSafety",
    "Hooks",
    "MoldInfo",
    "WorkerInfo",
    "ServerContext",
    "ChildKind",
    "Mold",
    "MoldState",
    "Worker",
    "WorkerState",
    "ReapReason",
]
