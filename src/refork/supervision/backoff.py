"""Retry policy and consecutive-failure bookkeeping for child spawns.

Example:
    >>> strategy = RetryOnce(delay=10.0)
    >>> strategy.should_retry(1), strategy.next_delay(1)
    (True, 10.0)
    >>> strategy.should_retry(2)
    False
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Hashable
from dataclasses import dataclass, field


class RetryStrategy(ABC):
    """Abstract base for spawn retry strategies."""

    @abstractmethod
    def next_delay(self, failures: int) -> float:
        """Delay in seconds before the attempt following *failures* failures."""
        ...

    @abstractmethod
    def should_retry(self, failures: int) -> bool:
        """True if another attempt is allowed after *failures* consecutive failures."""
        ...


@dataclass
class RetryOnce(RetryStrategy):
    """One retry after a constant delay; a second failure is final."""

    delay: float = 10.0

    def next_delay(self, failures: int) -> float:
        return self.delay

    def should_retry(self, failures: int) -> bool:
        return failures < 2


@dataclass
class ConsecutiveFailures:
    """Counts failures per key until a success resets that key.

    Worker spawns use the mold's spawn id as the key: two worker spawn
    failures in a row from the same mold mean the mold itself is broken.
    """

    counts: dict[Hashable, int] = field(default_factory=dict)

    def failure(self, key: Hashable) -> int:
        """Record a failure and return the new consecutive count."""
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    def success(self, key: Hashable) -> None:
        self.counts.pop(key, None)

    def forget(self, key: Hashable) -> None:
        """Drop *key* once nothing can fail under it any more."""
        self.counts.pop(key, None)

    def get(self, key: Hashable) -> int:
        return self.counts.get(key, 0)


@dataclass
class PendingRetry:
    """A mold spawn scheduled to run again after a failure."""

    generation: int
    basis_pid: int | None
    failures: int
    due: float


__all__ = ["RetryStrategy", "RetryOnce", "ConsecutiveFailures", "PendingRetry"]
