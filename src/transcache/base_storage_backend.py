"""
Abstract Storage Backend

This module contains the abstract base class that defines the key/value
contract the quota manager, integrity checker and consumers call through.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

from .storage_types import ItemPriority, StorageItem, StorageTier


class StorageBackend(ABC):
    """
    Abstract base class for per-tier key/value storage.

    Implementations may be an in-memory map, a browser storage API, a file
    system or a remote store. The core components never assume which one.
    The interface is designed to support:
    - Plain get/set/delete of byte payloads per tier
    - Usage accounting (bytes in use, key listing)
    - Item metadata for eviction scoring

    Implementations raise StorageBackendError on I/O failure.
    """

    @abstractmethod
    def get(self, tier: StorageTier, key: str) -> bytes | None:
        """
        Read a payload.

        Args:
            tier: The storage tier
            key: The item key

        Returns:
            The stored bytes, or None if the key does not exist
        """
        pass

    @abstractmethod
    def set(
        self,
        tier: StorageTier,
        key: str,
        value: bytes,
        *,
        priority: ItemPriority = ItemPriority.NORMAL,
        cleanup_allowed: bool = True,
    ) -> None:
        """
        Write a payload, creating or updating its item metadata.

        Args:
            tier: The storage tier
            key: The item key
            value: The payload bytes
            priority: Eviction priority of the item
            cleanup_allowed: Whether cleanup may ever remove the item
        """
        pass

    @abstractmethod
    def delete(self, tier: StorageTier, key: str) -> None:
        """
        Remove a payload and its metadata. Missing keys are ignored.

        Args:
            tier: The storage tier
            key: The item key
        """
        pass

    @abstractmethod
    def bytes_in_use(self, tier: StorageTier) -> int:
        """
        Get the number of payload bytes stored in a tier.

        Args:
            tier: The storage tier

        Returns:
            Total size in bytes
        """
        pass

    @abstractmethod
    def list_keys(self, tier: StorageTier) -> list[str]:
        """
        List all keys stored in a tier.

        Args:
            tier: The storage tier

        Returns:
            List of keys
        """
        pass

    def describe_items(self, tier: StorageTier) -> list[StorageItem]:
        """
        Get metadata for every item in a tier.

        Backends without access tracking fall back to sizes read from the
        payloads and the current time for both timestamps.
        """
        now = time.time()
        items = []
        for key in self.list_keys(tier):
            value = self.get(tier, key)
            if value is None:
                continue
            items.append(
                StorageItem(
                    key=key,
                    size=len(value),
                    created_at=now,
                    last_accessed=now,
                    access_count=1,
                )
            )
        return items

    def describe_item(self, tier: StorageTier, key: str) -> StorageItem | None:
        """Metadata of one item, or None if it does not exist."""
        return next((item for item in self.describe_items(tier) if item.key == key), None)

    def get_item_size(self, tier: StorageTier, key: str) -> int:
        """Get the payload size of one item, or 0 if it does not exist."""
        value = self.get(tier, key)
        return len(value) if value is not None else 0

    def close(self) -> None:
        """Release backend resources."""
