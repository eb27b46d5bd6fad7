"""
Unit tests for Storage Types

Tests the tier and priority enums, key categorization and the plan, snapshot
and result dataclasses.
"""

import pytest

from transcache.storage_types import (
    DEFAULT_TIER_LIMITS,
    CleanupPlan,
    CleanupResult,
    CleanupStrategy,
    ItemPriority,
    PlanPriority,
    QuotaManagerStats,
    QuotaSnapshot,
    QuotaStatus,
    RiskAssessment,
    RiskLevel,
    StorageItem,
    StorageTier,
    categorize_key,
)


class TestEnums:
    """Test suite for the storage enums."""

    def test_storage_tier_values(self):
        """Test StorageTier enum values."""
        assert [tier.value for tier in StorageTier] == ["local", "sync", "session", "memory"]

    def test_priority_rank_is_ordered(self):
        """Test ItemPriority ranks increase with importance."""
        ranks = [priority.rank for priority in ItemPriority]
        assert ranks == sorted(ranks)
        assert ItemPriority.CRITICAL.rank > ItemPriority.LOW.rank

    def test_plan_priority_order(self):
        """Test urgent plans sort first."""
        ordered = sorted(PlanPriority, key=lambda priority: priority.order)
        assert ordered == [PlanPriority.URGENT, PlanPriority.HIGH, PlanPriority.MEDIUM, PlanPriority.LOW]

    def test_unknown_status_exists(self):
        """Test UNKNOWN is distinct from the pressure statuses."""
        assert QuotaStatus("unknown") is QuotaStatus.UNKNOWN


class TestTierLimits:
    """Test suite for the default tier limits."""

    def test_every_tier_has_limits(self):
        """Test every tier has a default limit."""
        assert set(DEFAULT_TIER_LIMITS) == set(StorageTier)

    def test_local_quota_is_ten_megabytes(self):
        """Test the local tier default."""
        assert DEFAULT_TIER_LIMITS[StorageTier.LOCAL].max_bytes == 10 * 1024 * 1024

    def test_sync_tier_is_small(self):
        """Test the sync tier per-item limit."""
        limits = DEFAULT_TIER_LIMITS[StorageTier.SYNC]
        assert limits.max_bytes_per_item < limits.max_bytes


@pytest.mark.parametrize(
    "key, category",
    [
        ("config_secure", "config"),
        ("cache_item_001", "cache"),
        ("transcription_42", "transcription"),
        ("temp_upload", "temporary"),
        ("something_else", "unknown"),
    ],
)
def test_categorize_key(key, category):
    assert categorize_key(key) == category


class TestStorageItem:
    """Test suite for StorageItem."""

    def test_category_derived_from_key(self):
        """Test category defaults to the key prefix category."""
        item = StorageItem(key="cache_a", size=10, created_at=1.0, last_accessed=1.0)
        assert item.category == "cache"

    def test_explicit_category_kept(self):
        """Test an explicit category is not overwritten."""
        item = StorageItem(key="cache_a", size=10, created_at=1.0, last_accessed=1.0, category="x")
        assert item.category == "x"

    def test_touch(self):
        """Test touch updates recency and frequency."""
        item = StorageItem(key="cache_a", size=10, created_at=1.0, last_accessed=1.0)
        item.touch(5.0)
        assert item.last_accessed == 5.0
        assert item.access_count == 1


class TestSerialization:
    """Test suite for the to_dict helpers."""

    def test_snapshot_to_dict(self):
        """Test enums are serialized by value."""
        snapshot = QuotaSnapshot(
            tier=StorageTier.LOCAL,
            used_bytes=10,
            available_bytes=90,
            quota_bytes=100,
            usage_percentage=10.0,
            status=QuotaStatus.HEALTHY,
            item_count=1,
            max_items=10,
            item_usage_percentage=10.0,
            average_item_size=10.0,
            largest_item_size=10,
            growth_rate=0.0,
            time_until_full=None,
            rapid_growth=False,
            measured_at=1.0,
        )
        data = snapshot.to_dict()
        assert data["tier"] == "local"
        assert data["status"] == "healthy"
        assert data["time_until_full"] is None

    def test_plan_to_dict(self):
        """Test plan serialization includes item count and risk."""
        plan = CleanupPlan(
            id="cleanup-1-abc",
            strategy=CleanupStrategy.LRU,
            tier=StorageTier.LOCAL,
            estimated_bytes_freed=300,
            affected_keys=("cache_a", "cache_b"),
            priority=PlanPriority.MEDIUM,
            risk=RiskAssessment(RiskLevel.LOW, "Removes least recently used items"),
            title="Remove least recently used items",
            description="",
            estimated_duration_ms=20,
            created_at=1.0,
        )
        data = plan.to_dict()
        assert data["items_to_remove"] == 2
        assert data["affected_keys"] == ["cache_a", "cache_b"]
        assert data["risk"]["level"] == "low"
        assert data["risk"]["reversible"] is False

    def test_result_partial_flag(self):
        """Test partial is only set when both lists are non-empty."""
        result = CleanupResult(
            plan_id="p",
            success=True,
            bytes_freed=10,
            items_removed=1,
            duration=0.1,
            executed_at=1.0,
            strategy=CleanupStrategy.SMART,
            removed_keys=["a"],
            failed_keys=["b"],
        )
        assert result.partial is True
        assert result.to_dict()["strategy"] == "smart"
        result.failed_keys.clear()
        assert result.partial is False

    def test_stats_defaults(self):
        """Test every strategy starts at zero cleanups."""
        stats = QuotaManagerStats()
        assert stats.cleanups_by_strategy == {strategy: 0 for strategy in CleanupStrategy}
        assert stats.last_cleanup is None
