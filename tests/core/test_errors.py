"""Tests for refork.core.errors module."""

import pytest

from refork.core.errors import (
    ChildCrash,
    ConfigError,
    ErrorCategory,
    ErrorContext,
    ForkUnsafeError,
    InvalidConfigError,
    InvalidTransitionError,
    NoMoldAliveError,
    ReforkError,
    SpawnFailure,
    SpawnTimeout,
)


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_create_empty_context(self):
        """Create context with no fields set."""
        ctx = ErrorContext()
        assert ctx.kind is None
        assert ctx.generation is None
        assert ctx.metadata == {}

    def test_to_dict_includes_set_fields(self):
        """to_dict includes only non-None fields."""
        ctx = ErrorContext(kind="worker", generation=0, nr=1, metadata={"reason": "hook"})
        d = ctx.to_dict()
        assert d == {"kind": "worker", "generation": 0, "nr": 1, "reason": "hook"}
        assert "pid" not in d


class TestReforkError:
    """Test the base exception."""

    def test_defaults(self):
        error = ReforkError("boom")
        assert error.message == "boom"
        assert error.category is ErrorCategory.INTERNAL
        assert error.retryable is False
        assert str(error) == "boom"

    def test_with_context_is_fluent(self):
        """with_context sets known fields and puts the rest in metadata."""
        error = SpawnFailure("fork failed").with_context(kind="mold", generation=2, attempt=1)
        assert isinstance(error, SpawnFailure)
        assert error.context.kind == "mold"
        assert error.context.generation == 2
        assert error.context.metadata == {"attempt": 1}

    def test_cause_is_chained(self):
        cause = OSError("EAGAIN")
        error = SpawnFailure("fork failed", cause=cause)
        assert error.__cause__ is cause
        assert error.to_dict()["cause"] == "OSError: EAGAIN"

    def test_to_dict(self):
        error = ConfigError("bad threshold").with_context(metadata_key="refork_after")
        d = error.to_dict()
        assert d["error_type"] == "ConfigError"
        assert d["category"] == "CONFIG"
        assert d["retryable"] is False
        assert d["context"] == {"metadata_key": "refork_after"}

    def test_repr(self):
        assert repr(ReforkError("x")) == "ReforkError('x', category=INTERNAL)"


class TestErrorTaxonomy:
    """Categories and retryability of the concrete errors."""

    @pytest.mark.parametrize(
        "error, category, retryable",
        [
            (SpawnFailure("x"), ErrorCategory.SPAWN, True),
            (SpawnTimeout(timeout=20.0), ErrorCategory.TIMEOUT, True),
            (ChildCrash("x", status=1), ErrorCategory.CRASH, True),
            (ForkUnsafeError("x"), ErrorCategory.FORK_SAFETY, False),
            (ConfigError("x"), ErrorCategory.CONFIG, False),
            (NoMoldAliveError(), ErrorCategory.FATAL, False),
        ],
    )
    def test_category_and_retryable(self, error, category, retryable):
        assert error.category is category
        assert error.retryable is retryable

    def test_spawn_timeout_is_a_spawn_failure(self):
        error = SpawnTimeout(timeout=5.0)
        assert isinstance(error, SpawnFailure)
        assert error.timeout == 5.0

    def test_child_crash_keeps_status(self):
        assert ChildCrash("died", status=-9).status == -9

    def test_no_mold_alive_default_message(self):
        assert NoMoldAliveError().message == "No mold alive"

    def test_invalid_config_error(self):
        error = InvalidConfigError("worker_processes", 0)
        assert isinstance(error, ConfigError)
        assert error.key == "worker_processes"
        assert "worker_processes" in error.message


class TestInvalidTransitionError:
    def test_is_value_error(self):
        error = InvalidTransitionError("ready", "spawning", "MoldState")
        assert isinstance(error, ValueError)
        assert error.current == "ready"
        assert error.target == "spawning"
        assert "MoldState" in str(error)

