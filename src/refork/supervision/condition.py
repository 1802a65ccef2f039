"""Refork condition evaluator.

Workers report their running request count; the evaluator compares each
count with the threshold for that worker and fires once per window.

Thresholds come from ``refork_after`` and are read one of two ways:

``per_generation`` (default)
    Entry *g* applies to generation *g*, the last entry is reused for
    every later generation.  An entry is an int (all workers), a list
    (one threshold per worker index, last reused) or ``None`` (never
    refork from that generation).  ``[50, 100, 1000]`` means: leave
    generation 0 after 50 requests, generation 1 after 100, then every
    1000.

``per_worker``
    Entry *nr* is the threshold of worker *nr* for every transition, the
    last entry reused for higher indices.

Example:
    >>> condition = ReforkCondition([5, 5])
    >>> condition.record(nr=0, generation=0, count=5)
    >>> condition.check(generation=0, now=0.0)
    0
    >>> condition.check(generation=0, now=1.0) is None
    True
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

ThresholdMode = Literal["per_generation", "per_worker"]


def _last_or(entries: Sequence, index: int):
    return entries[min(index, len(entries) - 1)]


class ReforkCondition:
    """Decides when a refork should begin."""

    def __init__(self, thresholds: Sequence[int | Sequence[int] | None] = (), mode: ThresholdMode = "per_generation"):
        if mode not in ("per_generation", "per_worker"):
            raise ValueError(f"Unknown threshold mode: {mode!r}")
        self.thresholds = list(thresholds)
        self.mode = mode
        self._counts: dict[tuple[int, int], int] = {}
        self._window = 0
        self._fired: tuple[int, int] | None = None
        self._backoff_until = 0.0

    @property
    def enabled(self) -> bool:
        return bool(self.thresholds)

    def threshold_for(self, generation: int, nr: int) -> int | None:
        """Request count at which worker *nr* of *generation* trips the condition."""
        if not self.thresholds:
            return None
        if self.mode == "per_worker":
            entry = _last_or(self.thresholds, nr)
            if isinstance(entry, Sequence):
                entry = _last_or(entry, generation) if entry else None
            return entry
        entry = _last_or(self.thresholds, generation)
        if isinstance(entry, Sequence):
            return _last_or(entry, nr) if entry else None
        return entry

    def record(self, nr: int, generation: int, count: int) -> None:
        """Store the latest count reported by worker *nr* of *generation*."""
        self._counts[(generation, nr)] = count

    def forget(self, generation: int, nr: int) -> None:
        self._counts.pop((generation, nr), None)

    def count(self, generation: int, nr: int) -> int:
        return self._counts.get((generation, nr), 0)

    def check(self, generation: int, now: float) -> int | None:
        """Return the first worker index whose count meets its threshold.

        Fires at most once per window; returns ``None`` while backing
        off, after firing, or when nothing qualifies.
        """
        if now < self._backoff_until or self._fired == (generation, self._window):
            return None
        for (count_generation, nr), count in sorted(self._counts.items()):
            if count_generation != generation:
                continue
            threshold = self.threshold_for(generation, nr)
            if threshold is not None and count >= threshold:
                self._fired = (generation, self._window)
                return nr
        return None

    def fired(self, generation: int) -> bool:
        return self._fired == (generation, self._window)

    def rearm(self) -> None:
        """Open a new window so the same generation may fire again."""
        self._window += 1

    def backoff(self, now: float, delay: float) -> None:
        """Suppress firing until ``now + delay``."""
        self._backoff_until = max(self._backoff_until, now + delay)

    def prune(self, generation: int) -> None:
        """Drop counts of generations older than *generation*."""
        for key in [key for key in self._counts if key[0] < generation]:
            del self._counts[key]


__all__ = ["ReforkCondition", "ThresholdMode"]
