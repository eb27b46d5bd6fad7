"""
DiskCache-based Storage Backend

A persistent StorageBackend using the diskcache library. Used for the
``local`` and ``sync`` tiers, whose contents must survive a restart.

Key Benefits:
- SQLite-backed, safe for concurrent access from several processes
- Writes are atomic per key, so a crash mid-write never leaves half a payload
- A write or delete that fails halfway is rolled back, so payloads and
  metadata never disagree after an error
- Context manager support for proper cleanup
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import diskcache

from .base_storage_backend import StorageBackend
from .errors import StorageBackendError
from .storage_types import ItemPriority, StorageItem, StorageTier

logger = logging.getLogger(__name__)


class DiskCacheBackend(StorageBackend):
    """
    Filesystem-based StorageBackend using diskcache.

    Payloads and item metadata live in two separate caches so that metadata
    scans never load payload bytes.
    """

    def __init__(
        self,
        cache_dir: str = "/tmp/transcache",
        size_limit: int = int(1024**3),
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize DiskCacheBackend.

        Args:
            cache_dir: Directory for cache storage
            size_limit: Hard diskcache size limit in bytes (a safety net only)
            clock: Time source in epoch seconds
        """
        self._cache_dir = Path(cache_dir)
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock = threading.RLock()

        self._cache = diskcache.Cache(
            directory=str(self._cache_dir / "data"),
            eviction_policy="none",
            size_limit=size_limit,
        )
        self._metadata_cache = diskcache.Cache(
            directory=str(self._cache_dir / "metadata"),
            eviction_policy="none",
        )

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - automatic cleanup."""
        self.close()

    def close(self) -> None:
        """Close the caches and release file handles."""
        if hasattr(self, "_cache"):
            self._cache.close()
        if hasattr(self, "_metadata_cache"):
            self._metadata_cache.close()

    def _get_data_key(self, tier: StorageTier, key: str) -> str:
        return f"data:{tier.value}:{key}"

    def _get_metadata_key(self, tier: StorageTier, key: str) -> str:
        return f"metadata:{tier.value}:{key}"

    def _metadata_prefix(self, tier: StorageTier) -> str:
        return f"metadata:{tier.value}:"

    # StorageBackend interface
    def get(self, tier: StorageTier, key: str) -> bytes | None:
        with self._lock:
            try:
                value = self._cache.get(self._get_data_key(tier, key))
            except Exception as exc:
                raise StorageBackendError(f"Failed to read {tier.value}/{key}: {exc}") from exc
            if value is None:
                return None
            self._record_access(tier, key, len(value))
            return bytes(value)

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
            now = self._clock()
            metadata_key = self._get_metadata_key(tier, key)
            item = self._load_metadata(metadata_key)
            if item is None:
                item = StorageItem(
                    key=key,
                    size=len(value),
                    created_at=now,
                    last_accessed=now,
                    access_count=0,
                    priority=priority,
                    cleanup_allowed=cleanup_allowed,
                )
            item.size = len(value)
            item.priority = priority
            item.cleanup_allowed = cleanup_allowed
            item.touch(now)
            data_key = self._get_data_key(tier, key)
            try:
                previous = self._cache.get(data_key)
                self._cache.set(data_key, value)
            except Exception as exc:
                raise StorageBackendError(f"Failed to write {tier.value}/{key}: {exc}") from exc
            try:
                self._metadata_cache.set(metadata_key, item)
            except Exception as exc:
                self._restore_payload(data_key, previous)
                raise StorageBackendError(f"Failed to write {tier.value}/{key}: {exc}") from exc

    def delete(self, tier: StorageTier, key: str) -> None:
        with self._lock:
            metadata_key = self._get_metadata_key(tier, key)
            item = self._load_metadata(metadata_key)
            try:
                self._metadata_cache.delete(metadata_key)
            except Exception as exc:
                raise StorageBackendError(f"Failed to delete {tier.value}/{key}: {exc}") from exc
            try:
                self._cache.delete(self._get_data_key(tier, key))
            except Exception as exc:
                if item is not None:
                    self._restore_metadata(metadata_key, item)
                raise StorageBackendError(f"Failed to delete {tier.value}/{key}: {exc}") from exc

    def bytes_in_use(self, tier: StorageTier) -> int:
        with self._lock:
            return sum(item.size for item in self._scan_metadata(tier))

    def list_keys(self, tier: StorageTier) -> list[str]:
        with self._lock:
            return [item.key for item in self._scan_metadata(tier)]

    def describe_items(self, tier: StorageTier) -> list[StorageItem]:
        with self._lock:
            return self._scan_metadata(tier)

    def describe_item(self, tier: StorageTier, key: str) -> StorageItem | None:
        with self._lock:
            return self._load_metadata(self._get_metadata_key(tier, key))

    def get_item_size(self, tier: StorageTier, key: str) -> int:
        with self._lock:
            item = self._load_metadata(self._get_metadata_key(tier, key))
            return int(item.size) if item is not None else 0

    def volume(self) -> int:
        """Estimated on-disk footprint of both caches in bytes."""
        return int(self._cache.volume() + self._metadata_cache.volume())

    # Internal helpers
    def _load_metadata(self, metadata_key: str) -> StorageItem | None:
        try:
            item: Any = self._metadata_cache.get(metadata_key)
        except Exception as exc:
            logger.warning(f"Deleting unreadable metadata {metadata_key}: {exc}")
            self._metadata_cache.delete(metadata_key)
            return None
        return item if isinstance(item, StorageItem) else None

    def _restore_payload(self, data_key: str, previous: Any) -> None:
        """Undo a payload write whose metadata could not be written."""
        try:
            if previous is None:
                self._cache.delete(data_key)
            else:
                self._cache.set(data_key, previous)
        except Exception as exc:
            logger.error(f"Could not roll back payload {data_key}: {exc}")

    def _restore_metadata(self, metadata_key: str, item: StorageItem) -> None:
        try:
            self._metadata_cache.set(metadata_key, item)
        except Exception as exc:
            logger.error(f"Could not roll back metadata {metadata_key}: {exc}")

    def _record_access(self, tier: StorageTier, key: str, size: int) -> None:
        metadata_key = self._get_metadata_key(tier, key)
        now = self._clock()
        item = self._load_metadata(metadata_key)
        if item is None:
            # Payload without metadata; rebuild it so the item stays visible
            item = StorageItem(key=key, size=size, created_at=now, last_accessed=now)
        item.touch(now)
        self._metadata_cache.set(metadata_key, item)

    def _scan_metadata(self, tier: StorageTier) -> list[StorageItem]:
        prefix = self._metadata_prefix(tier)
        items = []
        for metadata_key in list(self._metadata_cache.iterkeys()):
            if not isinstance(metadata_key, str) or not metadata_key.startswith(prefix):
                continue
            try:
                item = self._metadata_cache[metadata_key]
            except KeyError:
                continue  # deleted concurrently
            except Exception as exc:
                # Self-heal: drop corrupted metadata entries to prevent repeated errors
                logger.warning(f"Deleting corrupted metadata {metadata_key}: {exc}")
                self._metadata_cache.delete(metadata_key)
                continue
            if isinstance(item, StorageItem):
                items.append(item)
        return items
