"""
Unit tests for eviction ordering and greedy item selection.
"""

import math

import pytest

from transcache.config import SmartScoreWeights
from transcache.eviction import (
    calculate_cleanup_score,
    order_for_strategy,
    select_items_for_cleanup,
)
from transcache.storage_types import CleanupStrategy, ItemPriority, StorageItem

NOW = 1_000_000.0
HOUR = 3600.0
WEIGHTS = SmartScoreWeights()


def item(key, size=100, age_hours=0.0, idle_hours=0.0, accesses=0, priority=ItemPriority.NORMAL, cleanup_allowed=True):
    return StorageItem(
        key=key,
        size=size,
        created_at=NOW - age_hours * HOUR,
        last_accessed=NOW - idle_hours * HOUR,
        access_count=accesses,
        priority=priority,
        cleanup_allowed=cleanup_allowed,
    )


class TestSmartScore:
    """Test suite for calculate_cleanup_score."""

    def test_fresh_normal_item(self):
        """Test the score of a new, empty, never-read item."""
        assert calculate_cleanup_score(item("a", size=0), NOW, WEIGHTS) == pytest.approx(130.0)

    def test_formula(self):
        """Test each term of the score."""
        candidate = item("a", size=999, age_hours=10, idle_hours=4, accesses=5, priority=ItemPriority.HIGH)
        expected = 100 + 50 + (5 / 10) * 20 - 4 * 0.5 - math.log(1000) * 0.1
        assert calculate_cleanup_score(candidate, NOW, WEIGHTS) == pytest.approx(expected)

    def test_idle_penalty_is_capped(self):
        """Test idle time beyond one week stops lowering the score."""
        week = calculate_cleanup_score(item("a", idle_hours=168), NOW, WEIGHTS)
        month = calculate_cleanup_score(item("a", idle_hours=720), NOW, WEIGHTS)
        assert week == pytest.approx(month)

    def test_score_is_never_negative(self):
        """Test the clamp at zero."""
        weights = SmartScoreWeights(base_score=0.0, recency_decay_per_hour=10.0)
        assert calculate_cleanup_score(item("a", idle_hours=100, priority=ItemPriority.LOW), NOW, weights) == 0.0

    def test_low_priority_idle_items_go_first(self):
        """Test smart ordering prefers unimportant idle items."""
        items = [
            item("critical", priority=ItemPriority.CRITICAL),
            item("busy", age_hours=1, accesses=1),
            item("stale", priority=ItemPriority.LOW, idle_hours=100),
        ]
        ordered = order_for_strategy(CleanupStrategy.SMART, items, NOW, WEIGHTS)
        assert [candidate.key for candidate in ordered] == ["stale", "busy", "critical"]


class TestOrdering:
    """Test suite for order_for_strategy."""

    def test_lru(self):
        """Test least recently accessed first."""
        items = [item("recent", idle_hours=1), item("old", idle_hours=5)]
        assert [i.key for i in order_for_strategy(CleanupStrategy.LRU, items, NOW, WEIGHTS)] == ["old", "recent"]

    def test_size_based(self):
        """Test largest first."""
        items = [item("small", size=10), item("large", size=1000)]
        assert [i.key for i in order_for_strategy(CleanupStrategy.SIZE_BASED, items, NOW, WEIGHTS)] == ["large", "small"]

    def test_age_based(self):
        """Test oldest created first."""
        items = [item("new", age_hours=1), item("ancient", age_hours=100)]
        assert [i.key for i in order_for_strategy(CleanupStrategy.AGE_BASED, items, NOW, WEIGHTS)] == ["ancient", "new"]

    def test_priority_based_excludes_critical(self):
        """Test priority ordering and the critical exclusion."""
        items = [
            item("critical", priority=ItemPriority.CRITICAL),
            item("high", priority=ItemPriority.HIGH),
            item("low", priority=ItemPriority.LOW),
        ]
        ordered = order_for_strategy(CleanupStrategy.PRIORITY_BASED, items, NOW, WEIGHTS)
        assert [i.key for i in ordered] == ["low", "high"]

    @pytest.mark.parametrize("strategy", list(CleanupStrategy))
    def test_cleanup_disallowed_never_selected(self, strategy):
        """Test protected items are excluded by every strategy."""
        items = [item("protected", cleanup_allowed=False), item("free")]
        ordered = order_for_strategy(strategy, items, NOW, WEIGHTS)
        assert [i.key for i in ordered] == ["free"]


class TestSelection:
    """Test suite for select_items_for_cleanup."""

    def test_stops_once_target_reached(self):
        """Test greedy selection stops at the first item reaching the target."""
        items = [item("a", size=40), item("b", size=40), item("c", size=40)]
        selected = select_items_for_cleanup(items, 50)
        assert [i.key for i in selected] == ["a", "b"]

    def test_exact_target(self):
        """Test a target met exactly takes no extra items."""
        items = [item("a", size=50), item("b", size=50)]
        assert [i.key for i in select_items_for_cleanup(items, 50)] == ["a"]

    def test_insufficient_candidates(self):
        """Test all items are taken when the target cannot be met."""
        items = [item("a", size=10)]
        assert select_items_for_cleanup(items, 500) == items

    def test_zero_target(self):
        """Test nothing is selected for a zero target."""
        assert select_items_for_cleanup([item("a")], 0) == []
