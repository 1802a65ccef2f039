"""Ambient infrastructure: errors, logging, settings."""

from refork.core.errors import (
    ChildCrash,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    ForkUnsafeError,
    InvalidTransitionError,
    NoMoldAliveError,
    ReforkError,
    SpawnFailure,
    SpawnTimeout,
)
from refork.core.logging import configure_logging, get_logger

__all__ = [
    "ReforkError",
    "ErrorCategory",
    "ErrorContext",
    "SpawnFailure",
    "SpawnTimeout",
    "ChildCrash",
    "ForkUnsafeError",
    "ConfigError",
    "NoMoldAliveError",
    "InvalidTransitionError",
    "configure_logging",
    "get_logger",
]
