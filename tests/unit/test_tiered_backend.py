"""
Unit tests for TieredStorageBackend

Tests that each tier is routed to exactly one underlying backend.
"""

import pytest

from transcache.storage_types import StorageTier
from transcache.tiered_backend import TieredStorageBackend
from transcache.ttl_in_memory_backend import TTLInMemoryBackend


@pytest.fixture
def tiered(tmp_path, clock):
    with TieredStorageBackend(cache_dir=str(tmp_path / "tiered"), clock=clock) as backend:
        yield backend


class TestRouting:
    """Test suite for tier routing."""

    @pytest.mark.parametrize("tier", [StorageTier.MEMORY, StorageTier.SESSION])
    def test_volatile_tiers_use_memory(self, tiered, tier):
        """Test memory and session go to the in-memory backend."""
        assert isinstance(tiered.backend_for(tier), TTLInMemoryBackend)

    @pytest.mark.parametrize("tier", [StorageTier.LOCAL, StorageTier.SYNC])
    def test_persistent_tiers_use_disk(self, tiered, tier):
        """Test local and sync go to the disk backend."""
        assert tiered.backend_for(tier) is not tiered.backend_for(StorageTier.MEMORY)

    def test_operations_pass_through(self, tiered):
        """Test get/set/delete and accounting on both backends."""
        for tier in StorageTier:
            tiered.set(tier, "cache_a", b"x" * 4)

        for tier in StorageTier:
            assert tiered.get(tier, "cache_a") == b"xxxx"
            assert tiered.bytes_in_use(tier) == 4
            assert tiered.list_keys(tier) == ["cache_a"]
            assert tiered.get_item_size(tier, "cache_a") == 4
            assert [item.key for item in tiered.describe_items(tier)] == ["cache_a"]

        tiered.delete(StorageTier.LOCAL, "cache_a")
        assert tiered.get(StorageTier.LOCAL, "cache_a") is None
        assert tiered.get(StorageTier.MEMORY, "cache_a") == b"xxxx"

    def test_backend_overrides(self, memory_backend, clock):
        """Test injected backends are used as given."""
        other = TTLInMemoryBackend(clock=clock)
        tiered = TieredStorageBackend(memory_backend=memory_backend, disk_backend=other)
        tiered.set(StorageTier.LOCAL, "k", b"v")
        assert other.get(StorageTier.LOCAL, "k") == b"v"
        assert memory_backend.get(StorageTier.LOCAL, "k") is None
