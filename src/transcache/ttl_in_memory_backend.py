"""
TTL In-Memory Storage Backend (Cacheout-backed)

Provides a StorageBackend with an optional sliding TTL. Used for the
``memory`` and ``session`` tiers, whose contents do not need to survive a
restart.

Design notes:
- One Cacheout cache per tier, keyed by item key.
- Each value is a small dict containing:
  - value: the payload bytes
  - item: the StorageItem metadata (size, timestamps, access count, priority)
- Sliding TTL is achieved by re-setting the same payload on every read.
- Cacheout never evicts on size here (maxsize=0); keeping tiers under quota is
  the quota manager's job.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Optional, cast

from cacheout import Cache

from .base_storage_backend import StorageBackend
from .storage_types import ItemPriority, StorageItem, StorageTier


class TTLInMemoryBackend(StorageBackend):
    """In-memory StorageBackend with per-tier caches and sliding TTL."""

    def __init__(
        self,
        ttl_seconds: float = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize TTLInMemoryBackend.

        Args:
            ttl_seconds: Sliding TTL for items, 0 disables expiry
            clock: Time source in epoch seconds
        """
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._tiers = {
            tier: Cache(maxsize=0, ttl=ttl_seconds, timer=clock) for tier in StorageTier
        }
        # Re-entrant so nested helpers can take the same lock
        self._lock = threading.RLock()

    # Internal helpers
    def _now(self) -> float:
        return self._clock()

    def _get_payload(self, tier: StorageTier, key: str) -> dict[str, Any] | None:
        return cast(Optional[dict[str, Any]], self._tiers[tier].get(key))

    def _touch(self, tier: StorageTier, key: str, payload: dict[str, Any]) -> None:
        item: StorageItem = payload["item"]
        item.touch(self._now())
        # Re-set to refresh TTL (sliding TTL behavior)
        self._tiers[tier].set(key, payload, ttl=self._ttl_seconds)

    # StorageBackend interface
    def get(self, tier: StorageTier, key: str) -> bytes | None:
        with self._lock:
            payload = self._get_payload(tier, key)
            if payload is None:
                return None
            self._touch(tier, key, payload)
            return cast(bytes, payload["value"])

    def set(
        self,
        tier: StorageTier,
        key: str,
        value: bytes,
        *,
        priority: ItemPriority = ItemPriority.NORMAL,
        cleanup_allowed: bool = True,
    ) -> None:
        with self._lock:
            now = self._now()
            payload = self._get_payload(tier, key)
            if payload is None:
                item = StorageItem(
                    key=key,
                    size=len(value),
                    created_at=now,
                    last_accessed=now,
                    access_count=0,
                    priority=priority,
                    cleanup_allowed=cleanup_allowed,
                )
                payload = {"value": value, "item": item}
            else:
                item = payload["item"]
                item.size = len(value)
                item.priority = priority
                item.cleanup_allowed = cleanup_allowed
                payload["value"] = value
            self._touch(tier, key, payload)

    def delete(self, tier: StorageTier, key: str) -> None:
        with self._lock:
            self._tiers[tier].delete(key)

    def bytes_in_use(self, tier: StorageTier) -> int:
        with self._lock:
            return sum(item.size for item in self._items(tier))

    def list_keys(self, tier: StorageTier) -> list[str]:
        with self._lock:
            return [item.key for item in self._items(tier)]

    def describe_items(self, tier: StorageTier) -> list[StorageItem]:
        """Copies of item metadata, without counting as an access."""
        with self._lock:
            return [
                StorageItem(
                    key=item.key,
                    size=item.size,
                    created_at=item.created_at,
                    last_accessed=item.last_accessed,
                    access_count=item.access_count,
                    priority=item.priority,
                    cleanup_allowed=item.cleanup_allowed,
                    category=item.category,
                )
                for item in self._items(tier)
            ]

    def get_item_size(self, tier: StorageTier, key: str) -> int:
        with self._lock:
            payload = self._get_payload(tier, key)
            if payload is None:
                return 0
            return int(payload["item"].size)

    def close(self) -> None:
        with self._lock:
            for cache in self._tiers.values():
                cache.clear()

    def _items(self, tier: StorageTier) -> list[StorageItem]:
        cache = self._tiers[tier]
        items = []
        for key in list(cache.keys()):
            payload = self._get_payload(tier, key)
            if payload is not None:
                items.append(payload["item"])
        return items
