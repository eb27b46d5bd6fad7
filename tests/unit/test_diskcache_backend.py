"""
Unit tests for DiskCacheBackend

Tests persistence, metadata tracking and self-healing of unreadable
metadata.
"""

from unittest.mock import patch

import diskcache
import pytest

from transcache.diskcache_backend import DiskCacheBackend
from transcache.errors import StorageBackendError
from transcache.storage_types import ItemPriority, StorageTier

TIER = StorageTier.LOCAL


class TestDiskCacheBackend:
    """Test suite for DiskCacheBackend."""

    def test_set_and_get(self, disk_backend):
        """Test round trip of a payload."""
        disk_backend.set(TIER, "transcription_1", b"hello")
        assert disk_backend.get(TIER, "transcription_1") == b"hello"
        assert disk_backend.get(TIER, "missing") is None

    def test_usage_accounting(self, disk_backend):
        """Test bytes_in_use, list_keys and get_item_size."""
        disk_backend.set(TIER, "cache_a", b"x" * 100)
        disk_backend.set(TIER, "cache_b", b"x" * 50)
        disk_backend.set(StorageTier.SYNC, "cache_c", b"x" * 7)

        assert disk_backend.bytes_in_use(TIER) == 150
        assert sorted(disk_backend.list_keys(TIER)) == ["cache_a", "cache_b"]
        assert disk_backend.get_item_size(StorageTier.SYNC, "cache_c") == 7

    def test_delete(self, disk_backend):
        """Test delete removes payload and metadata."""
        disk_backend.set(TIER, "cache_a", b"x")
        disk_backend.delete(TIER, "cache_a")
        disk_backend.delete(TIER, "cache_a")
        assert disk_backend.get(TIER, "cache_a") is None
        assert disk_backend.describe_items(TIER) == []

    def test_metadata(self, disk_backend, clock):
        """Test item metadata is tracked on write and read."""
        created = clock.now
        disk_backend.set(TIER, "config_secure", b"x", priority=ItemPriority.CRITICAL, cleanup_allowed=False)
        clock.advance(5)
        disk_backend.get(TIER, "config_secure")

        (item,) = disk_backend.describe_items(TIER)

        assert item.created_at == created
        assert item.last_accessed == created + 5
        assert item.access_count == 2
        assert item.priority is ItemPriority.CRITICAL
        assert item.cleanup_allowed is False

    def test_persistence_across_instances(self, tmp_path, clock):
        """Test data survives closing and reopening the directory."""
        cache_dir = str(tmp_path / "persistent")
        with DiskCacheBackend(cache_dir=cache_dir, clock=clock) as backend:
            backend.set(TIER, "cache_a", b"persisted")

        with DiskCacheBackend(cache_dir=cache_dir, clock=clock) as reopened:
            assert reopened.get(TIER, "cache_a") == b"persisted"
            assert reopened.bytes_in_use(TIER) == len(b"persisted")

    def test_unreadable_metadata_is_dropped(self, disk_backend):
        """Test non-StorageItem metadata is ignored during scans."""
        disk_backend.set(TIER, "cache_a", b"x")
        disk_backend._metadata_cache.set("metadata:local:cache_bogus", {"not": "an item"})
        assert disk_backend.list_keys(TIER) == ["cache_a"]

    def test_payload_without_metadata_is_rebuilt_on_read(self, disk_backend):
        """Test a read restores missing metadata."""
        disk_backend.set(TIER, "cache_a", b"abc")
        disk_backend._metadata_cache.delete("metadata:local:cache_a")
        assert disk_backend.get(TIER, "cache_a") == b"abc"
        assert disk_backend.get_item_size(TIER, "cache_a") == 3

    def test_write_failure_raises_backend_error(self, disk_backend):
        """Test diskcache errors surface as StorageBackendError."""
        with patch.object(diskcache.Cache, "set", side_effect=OSError("disk full")):
            with pytest.raises(StorageBackendError, match="disk full"):
                disk_backend.set(TIER, "cache_a", b"x")

    def test_failed_metadata_write_rolls_back_payload(self, disk_backend):
        """Test a new payload is removed when its metadata cannot be written."""
        with patch.object(disk_backend._metadata_cache, "set", side_effect=OSError("disk full")):
            with pytest.raises(StorageBackendError, match="disk full"):
                disk_backend.set(TIER, "cache_a", b"x" * 10)

        assert disk_backend.bytes_in_use(TIER) == 0
        assert disk_backend.list_keys(TIER) == []
        assert disk_backend.get(TIER, "cache_a") is None

    def test_failed_metadata_write_restores_previous_payload(self, disk_backend):
        """Test an overwrite that fails keeps the previous value and size."""
        disk_backend.set(TIER, "cache_a", b"old")
        with patch.object(disk_backend._metadata_cache, "set", side_effect=OSError("disk full")):
            with pytest.raises(StorageBackendError):
                disk_backend.set(TIER, "cache_a", b"new and longer")

        assert disk_backend.get(TIER, "cache_a") == b"old"
        assert disk_backend.bytes_in_use(TIER) == 3

    def test_failed_payload_delete_keeps_item_visible(self, disk_backend):
        """Test a delete that fails halfway leaves the item counted and readable."""
        disk_backend.set(TIER, "cache_a", b"abc")
        with patch.object(disk_backend._cache, "delete", side_effect=OSError("locked")):
            with pytest.raises(StorageBackendError, match="locked"):
                disk_backend.delete(TIER, "cache_a")

        assert disk_backend.list_keys(TIER) == ["cache_a"]
        assert disk_backend.bytes_in_use(TIER) == 3
        assert disk_backend.get(TIER, "cache_a") == b"abc"

    def test_volume(self, disk_backend):
        """Test the on-disk footprint is reported."""
        disk_backend.set(TIER, "cache_a", b"x" * 1000)
        assert disk_backend.volume() > 0
