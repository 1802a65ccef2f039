"""Tests for the refork condition evaluator."""

import pytest

from refork.supervision.condition import ReforkCondition


class TestThresholds:
    """threshold_for in both modes."""

    def test_disabled_without_thresholds(self):
        condition = ReforkCondition()
        assert not condition.enabled
        assert condition.threshold_for(0, 0) is None

    def test_per_generation_reuses_last_entry(self):
        condition = ReforkCondition([50, 100, 1000])
        assert condition.threshold_for(0, 0) == 50
        assert condition.threshold_for(1, 3) == 100
        assert condition.threshold_for(2, 0) == 1000
        assert condition.threshold_for(7, 0) == 1000

    def test_per_generation_lists_are_per_worker(self):
        condition = ReforkCondition([[10, 20], 30])
        assert condition.threshold_for(0, 0) == 10
        assert condition.threshold_for(0, 1) == 20
        assert condition.threshold_for(0, 5) == 20
        assert condition.threshold_for(1, 5) == 30

    def test_none_stops_reforking(self):
        condition = ReforkCondition([5, None])
        assert condition.threshold_for(0, 0) == 5
        assert condition.threshold_for(1, 0) is None
        assert condition.threshold_for(4, 0) is None

    def test_per_worker_mode(self):
        condition = ReforkCondition([5, 8], mode="per_worker")
        assert condition.threshold_for(0, 0) == 5
        assert condition.threshold_for(3, 0) == 5
        assert condition.threshold_for(0, 1) == 8
        assert condition.threshold_for(0, 4) == 8

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            ReforkCondition([5], mode="sometimes")


class TestCheck:
    """Firing rules."""

    def test_fires_once_per_window(self):
        condition = ReforkCondition([5, 5])
        condition.record(nr=1, generation=0, count=4)
        assert condition.check(0, now=0.0) is None
        condition.record(nr=1, generation=0, count=5)
        assert condition.check(0, now=1.0) == 1
        assert condition.fired(0)
        condition.record(nr=0, generation=0, count=9)
        assert condition.check(0, now=2.0) is None

    def test_lowest_index_wins(self):
        condition = ReforkCondition([3])
        condition.record(nr=1, generation=0, count=3)
        condition.record(nr=0, generation=0, count=3)
        assert condition.check(0, now=0.0) == 0

    def test_other_generations_are_ignored(self):
        condition = ReforkCondition([3])
        condition.record(nr=0, generation=0, count=10)
        assert condition.check(1, now=0.0) is None

    def test_new_generation_can_fire(self):
        condition = ReforkCondition([3])
        condition.record(nr=0, generation=0, count=3)
        assert condition.check(0, now=0.0) == 0
        condition.record(nr=0, generation=1, count=3)
        assert condition.check(1, now=0.0) == 0

    def test_rearm_and_backoff(self):
        condition = ReforkCondition([3])
        condition.record(nr=0, generation=0, count=3)
        assert condition.check(0, now=0.0) == 0
        condition.backoff(now=0.0, delay=10.0)
        condition.rearm()
        assert condition.check(0, now=5.0) is None
        assert condition.check(0, now=10.0) == 0

    def test_forget_and_prune(self):
        condition = ReforkCondition([3])
        condition.record(nr=0, generation=0, count=3)
        condition.record(nr=1, generation=1, count=2)
        condition.forget(0, 0)
        assert condition.count(0, 0) == 0
        condition.record(nr=0, generation=0, count=3)
        condition.prune(1)
        assert condition.count(0, 0) == 0
        assert condition.count(1, 1) == 2
