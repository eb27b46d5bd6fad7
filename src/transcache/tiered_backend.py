"""
Tiered Storage Backend

Combines the in-memory and diskcache backends behind one StorageBackend:

- ``memory`` and ``session`` tiers live in memory (fast, lost on restart)
- ``local`` and ``sync`` tiers live on disk (persistent)

Routing is fixed per tier, so every key has exactly one home and quota
accounting per tier stays exact.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from .base_storage_backend import StorageBackend
from .diskcache_backend import DiskCacheBackend
from .storage_types import ItemPriority, StorageItem, StorageTier
from .ttl_in_memory_backend import TTLInMemoryBackend

VOLATILE_TIERS = frozenset({StorageTier.MEMORY, StorageTier.SESSION})


class TieredStorageBackend(StorageBackend):
    """Routes each storage tier to the memory or the disk backend."""

    def __init__(
        self,
        cache_dir: str = "/tmp/transcache",
        memory_ttl_seconds: float = 5 * 60 * 60,  # 5 hours
        clock: Callable[[], float] = time.time,
        memory_backend: StorageBackend | None = None,
        disk_backend: StorageBackend | None = None,
    ) -> None:
        """
        Initialize TieredStorageBackend.

        Args:
            cache_dir: Directory for the persistent tiers
            memory_ttl_seconds: Sliding TTL for the volatile tiers
            clock: Time source in epoch seconds
            memory_backend: Override for the volatile tiers
            disk_backend: Override for the persistent tiers
        """
        self._memory_backend = memory_backend or TTLInMemoryBackend(
            ttl_seconds=memory_ttl_seconds, clock=clock
        )
        self._disk_backend = disk_backend or DiskCacheBackend(
            cache_dir=cache_dir, clock=clock
        )

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - automatic cleanup."""
        self.close()

    def close(self) -> None:
        self._memory_backend.close()
        self._disk_backend.close()

    def backend_for(self, tier: StorageTier) -> StorageBackend:
        return self._memory_backend if tier in VOLATILE_TIERS else self._disk_backend

    # StorageBackend interface
    def get(self, tier: StorageTier, key: str) -> bytes | None:
        return self.backend_for(tier).get(tier, key)

    def set(
        self,
        tier: StorageTier,
        key: str,
        value: bytes,
        *,
        priority: ItemPriority = ItemPriority.NORMAL,
        cleanup_allowed: bool = True,
    ) -> None:
        self.backend_for(tier).set(
            tier, key, value, priority=priority, cleanup_allowed=cleanup_allowed
        )

    def delete(self, tier: StorageTier, key: str) -> None:
        self.backend_for(tier).delete(tier, key)

    def bytes_in_use(self, tier: StorageTier) -> int:
        return self.backend_for(tier).bytes_in_use(tier)

    def list_keys(self, tier: StorageTier) -> list[str]:
        return self.backend_for(tier).list_keys(tier)

    def describe_items(self, tier: StorageTier) -> list[StorageItem]:
        return self.backend_for(tier).describe_items(tier)

    def describe_item(self, tier: StorageTier, key: str) -> StorageItem | None:
        return self.backend_for(tier).describe_item(tier, key)

    def get_item_size(self, tier: StorageTier, key: str) -> int:
        return self.backend_for(tier).get_item_size(tier, key)
