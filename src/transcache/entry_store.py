"""
Cache Entry Store

Writes checksummed CacheEntries through a storage backend and validates them
lazily on read. Corrupted entries are replaced when the integrity checker
restored them from a backup, and otherwise deleted under the ``remove``
strategy with auto recovery on. Integrity sweeps apply the same rule.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from .base_storage_backend import StorageBackend
from .cache_entry import CacheEntry, ChecksumAlgorithm, build_cache_entry
from .errors import StorageBackendError
from .integrity_checker import IntegrityChecker
from .storage_types import ItemPriority, StorageTier
from .utils.key_utils import validate_key

logger = logging.getLogger(__name__)


def write_restored_entry(
    backend: StorageBackend, tier: StorageTier, key: str, entry: CacheEntry
) -> None:
    """Write a restored entry back, keeping the priority of the item it replaces."""
    item = backend.describe_item(tier, key)
    if item is None:
        backend.set(tier, key, entry.to_bytes())
    else:
        backend.set(
            tier,
            key,
            entry.to_bytes(),
            priority=item.priority,
            cleanup_allowed=item.cleanup_allowed,
        )


class CacheEntryStore:
    """Read-through validation layer for cached transcription data."""

    def __init__(
        self,
        backend: StorageBackend,
        checker: IntegrityChecker,
        algorithm: ChecksumAlgorithm | str = ChecksumAlgorithm.SHA256,
        default_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._checker = checker
        self._algorithm = ChecksumAlgorithm(algorithm)
        self._default_ttl_seconds = default_ttl_seconds
        self._clock = clock

    def put(
        self,
        tier: StorageTier,
        key: str,
        data: Any,
        *,
        priority: ItemPriority = ItemPriority.NORMAL,
        ttl_seconds: float | None = None,
        cleanup_allowed: bool = True,
    ) -> int:
        """
        Store JSON-compatible data as a checksummed entry.

        Returns:
            Number of bytes written

        Raises:
            ValueError: if the key is invalid
            TypeError: if the data is not JSON-serializable
            StorageBackendError: if the backend write fails
        """
        validate_key(key)
        entry = build_cache_entry(
            key,
            data,
            algorithm=self._algorithm,
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self._default_ttl_seconds,
            now=self._clock(),
        )
        payload = entry.to_bytes()
        self._backend.set(
            tier, key, payload, priority=priority, cleanup_allowed=cleanup_allowed
        )
        return len(payload)

    def get(self, tier: StorageTier, key: str) -> Any | None:
        """
        Read and validate an entry.

        Returns:
            The stored data, or None on a miss, an expired entry, a backend
            failure or an unrecoverable corruption
        """
        try:
            raw = self._backend.get(tier, key)
        except StorageBackendError as exc:
            logger.warning(f"Cache read failed for {tier.value}/{key}: {exc}")
            return None
        if raw is None:
            return None

        result = self._checker.check_raw_entry(key, raw)
        if not result.success:
            logger.warning(f"Could not validate {tier.value}/{key}: {result.error}")
            return None

        if not result.is_valid:
            return self._handle_corrupted(tier, key, result.restored_entry)

        entry = self._decode(raw)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            logger.debug(f"Cache entry {tier.value}/{key} expired")
            self._delete_quietly(tier, key)
            return None
        return entry.data

    def delete(self, tier: StorageTier, key: str) -> None:
        self._backend.delete(tier, key)

    # Internal helpers
    def _handle_corrupted(
        self, tier: StorageTier, key: str, restored: CacheEntry | None
    ) -> Any | None:
        if restored is not None:
            try:
                write_restored_entry(self._backend, tier, key, restored)
            except StorageBackendError as exc:
                logger.warning(f"Could not write restored entry {tier.value}/{key}: {exc}")
                return None
            logger.info(f"Restored corrupted cache entry {tier.value}/{key}")
            return restored.data

        if self._checker.config.removes_corrupted_entries:
            self._delete_quietly(tier, key)
        return None

    @staticmethod
    def _decode(raw: bytes) -> CacheEntry | None:
        try:
            return CacheEntry.from_bytes(raw)
        except (ValueError, KeyError, TypeError):
            return None

    def _delete_quietly(self, tier: StorageTier, key: str) -> None:
        try:
            self._backend.delete(tier, key)
        except StorageBackendError as exc:
            logger.warning(f"Could not delete {tier.value}/{key}: {exc}")
