"""
Structured error types for the refork supervisor.

Every failure the supervisor reasons about has a type here.  Errors carry
a category, a retryable flag and an :class:`ErrorContext` describing the
child process involved, so the control loop can decide between "retry
once", "abandon the transition" and "shut down" without string matching.

Manifesto:
    - **Typed failures:** spawn failures, timeouts and crashes are distinct types
    - **Explicit retry semantics:** each error knows whether one retry is allowed
    - **Child context:** kind, generation, worker index, pid and spawn id travel with the error
    - **Error chaining:** hook exceptions are preserved as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                        ReforkError                            │
        │  (category, retryable, context, cause)                        │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  SpawnFailure (retryable)     ChildCrash (retryable)          │
        │       │                                                       │
        │  SpawnTimeout                                                 │
        │                                                               │
        │  ForkUnsafeError (FORK_SAFETY)   ConfigError (CONFIG)         │
        │                                                               │
        │  NoMoldAliveError (FATAL)                                     │
        └──────────────────────────────────────────────────────────────┘

    ``InvalidTransitionError`` lives beside the hierarchy: it is a
    ``ValueError`` raised by the state machines on an illegal transition.

Examples:
    >>> error = SpawnFailure("after_mold_fork hook failed").with_context(kind="mold", generation=1)
    >>> error.retryable
    True
    >>> error.context.generation
    1

Tags:
    error-handling, exception-hierarchy, retry-logic, refork

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    SPAWN = "SPAWN"                # Duplication or post-fork hook failures
    TIMEOUT = "TIMEOUT"            # Child never became ready in time
    CRASH = "CRASH"                # Ready child exited unexpectedly
    FORK_SAFETY = "FORK_SAFETY"    # Refork refused, process state unsafe to copy
    CONFIG = "CONFIG"              # Invalid settings, unloadable app or hooks
    FATAL = "FATAL"                # Supervisor cannot keep serving
    INTERNAL = "INTERNAL"          # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata about the child process an error refers to.

    Attributes:
        kind: ``"mold"`` or ``"worker"``
        generation: Generation of the child
        nr: Worker index, ``None`` for molds
        pid: OS process id, if known
        spawn_id: Spawn request token
        metadata: Additional key-value pairs
    """

    kind: str | None = None
    generation: int | None = None
    nr: int | None = None
    pid: int | None = None
    spawn_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["kind", "generation", "nr", "pid", "spawn_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class ReforkError(Exception):
    """
    Base exception for all refork errors.

    Subclasses set ``default_category`` and ``default_retryable`` so
    callers rarely pass them explicitly.

    Examples:
        >>> error = ReforkError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> ReforkError:
        """
        Add context to this error (fluent API).

        Usage:
            raise SpawnFailure("fork failed").with_context(kind="worker", nr=3)
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# CHILD LIFECYCLE ERRORS
# =============================================================================


class SpawnFailure(ReforkError):
    """
    Duplicating a child failed, or its post-fork hook raised.

    Retryable exactly once per spawn target; the managers decide what a
    second consecutive failure means.
    """

    default_category = ErrorCategory.SPAWN
    default_retryable = True


class SpawnTimeout(SpawnFailure):
    """Child did not become ready within ``spawn_timeout``."""

    default_category = ErrorCategory.TIMEOUT

    def __init__(self, message: str = "Child did not become ready in time", *, timeout: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class ChildCrash(ReforkError):
    """A previously ready child exited without being asked to."""

    default_category = ErrorCategory.CRASH
    default_retryable = True

    def __init__(self, message: str, *, status: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status = status


class ForkUnsafeError(ReforkError):
    """Refork refused because a worker declared itself unsafe to duplicate."""

    default_category = ErrorCategory.FORK_SAFETY
    default_retryable = False


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(ReforkError):
    """
    Configuration error.

    Never retryable - configuration must be fixed.  Raised before any
    child process is spawned.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


# =============================================================================
# FATAL ERRORS
# =============================================================================


class NoMoldAliveError(ReforkError):
    """No mold could be kept alive; the supervisor must exit with status 1."""

    default_category = ErrorCategory.FATAL
    default_retryable = False

    def __init__(self, message: str = "No mold alive", **kwargs: Any):
        super().__init__(message, **kwargs)


class InvalidTransitionError(ValueError):
    """Raised when a mold or worker state machine is asked for an illegal move.

    Transition validation is deliberately strict.  A legitimate transition
    that is blocked belongs in the transition table, never in a bypass.
    """

    def __init__(self, current: str, target: str, enum_name: str = "State") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "ReforkError",
    "SpawnFailure",
    "SpawnTimeout",
    "ChildCrash",
    "ForkUnsafeError",
    "ConfigError",
    "InvalidConfigError",
    "NoMoldAliveError",
    "InvalidTransitionError",
]
