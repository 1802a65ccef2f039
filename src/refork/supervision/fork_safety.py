"""Process-wide fork safety flag.

Starts safe.  The first child that declares itself unsafe flips it and
it never flips back for the life of the monitor: every later refork,
whether from the request-count condition, from SIGUSR2 or from a
scheduled retry, is rejected.  A mold that must be replaced after a
crash is then forked by the monitor itself.
"""

from __future__ import annotations

from refork.core.errors import ForkUnsafeError


class ForkSafety:
    """Monotonic "may we still refork" flag owned by the control loop.

    Example:
        >>> safety = ForkSafety()
        >>> safety.disable(by=4242)
        True
        >>> safety.disable(by=4343)
        False
        >>> safety.safe, safety.disabled_by
        (False, 4242)
    """

    def __init__(self) -> None:
        self._safe = True
        self._disabled_by: int | None = None
        self._disabled_by_nr: int | None = None

    @property
    def safe(self) -> bool:
        return self._safe

    @property
    def disabled_by(self) -> int | None:
        """Pid of the child that first declared itself unsafe."""
        return self._disabled_by

    @property
    def disabled_by_nr(self) -> int | None:
        return self._disabled_by_nr

    def disable(self, by: int | None = None, nr: int | None = None) -> bool:
        """Mark the process tree unsafe.  Returns True only on the first call."""
        if not self._safe:
            return False
        self._safe = False
        self._disabled_by = by
        self._disabled_by_nr = nr
        return True

    def error(self) -> ForkUnsafeError:
        """The refusal to log when a refork is rejected for safety."""
        return ForkUnsafeError("Refork refused, a child is no longer fork safe").with_context(
            pid=self._disabled_by, nr=self._disabled_by_nr
        )

    def __bool__(self) -> bool:
        return self._safe

    def __repr__(self) -> str:
        if self._safe:
            return "ForkSafety(safe=True)"
        return f"ForkSafety(safe=False, disabled_by={self._disabled_by})"


__all__ = ["ForkSafety"]
