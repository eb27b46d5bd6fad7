"""
Cache integrity checking with checksum validation and corruption detection.

Every entry can be validated three independent ways (checksum, declared
size and serialization structure). Each failed validation is recorded as a
CorruptionEvent in a bounded ring and handed to the configured recovery
strategy. Checks never raise; an error inside a check is reported as a failed
check, which is distinct from finding corruption.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .cache_entry import (
    CacheEntry,
    VerificationStatus,
    canonical_json,
    checksum_of_text,
)
from .config import IntegrityConfig, RecoveryStrategy
from .events import EventEmitter, EventType

logger = logging.getLogger(__name__)

BackupProvider = Callable[[str], "CacheEntry | None"]


class CorruptionType(Enum):
    CHECKSUM_MISMATCH = "checksum_mismatch"
    SIZE_MISMATCH = "size_mismatch"
    STRUCTURE_INVALID = "structure_invalid"
    DATA_MISSING = "data_missing"


class RecoveryAction(Enum):
    REMOVED = "removed"
    RESTORED = "restored"
    NONE = "none"


@dataclass
class _Inspection:
    found: list[tuple[CorruptionType, Any, Any]] = field(default_factory=list)
    data_size: int = 0
    expected_checksum: str | None = None
    actual_checksum: str | None = None
    error: str | None = None


@dataclass
class CorruptionEvent:
    """One failed validation. Recovery fields are filled in after recovery runs."""

    key: str
    type: CorruptionType
    detected_at: float
    expected: Any = None
    actual: Any = None
    recovery_action: RecoveryAction | None = None
    recovery_success: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "type": self.type.value,
            "detected_at": self.detected_at,
            "expected": self.expected,
            "actual": self.actual,
            "recovery_action": self.recovery_action.value if self.recovery_action else None,
            "recovery_success": self.recovery_success,
        }


@dataclass
class IntegrityCheckResult:
    key: str
    success: bool
    is_valid: bool
    duration: float
    timestamp: float
    data_size: int = 0
    expected_checksum: str | None = None
    actual_checksum: str | None = None
    corruption_types: list[CorruptionType] = field(default_factory=list)
    restored_entry: CacheEntry | None = None
    error: str | None = None

    @property
    def should_remove(self) -> bool:
        """True when the entry is corrupt and nothing replaced it."""
        return self.success and not self.is_valid and self.restored_entry is None


@dataclass
class BatchIntegrityResult:
    total_checked: int
    valid_entries: int
    corrupted_entries: int
    failed_checks: int
    corrupted_keys: list[str]
    failed_keys: list[str]
    duration: float
    timestamp: float
    results: dict[str, IntegrityCheckResult] = field(default_factory=dict)


@dataclass
class EntryValidation:
    is_valid: bool
    issues: list[str]
    recommendations: list[str]


@dataclass
class IntegrityStats:
    total_checks: int
    valid_checks: int
    corrupted_entries: int
    failed_checks: int
    corruption_events: int
    recovery_attempts: int
    successful_recoveries: int
    average_check_time: float
    corruption_rate: float
    last_check: float | None


class IntegrityChecker:
    """Detects corrupted cache entries and drives their recovery."""

    def __init__(
        self,
        config: IntegrityConfig | None = None,
        backup_provider: BackupProvider | None = None,
        events: EventEmitter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize IntegrityChecker.

        Args:
            config: Validation, recovery and batching settings
            backup_provider: Returns a replacement entry for a key, used by the
                restore strategy
            events: Emitter for corruption_detected notifications
            clock: Time source in epoch seconds
        """
        self._config = config or IntegrityConfig()
        self._backup_provider = backup_provider
        self._events = events or EventEmitter()
        self._clock = clock

        self._corruption_events: deque[CorruptionEvent] = deque(
            maxlen=self._config.max_corruption_events
        )
        self._recovery_attempts_by_key: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

        # Raw counters; derived values are computed in get_stats()
        self._total_checks = 0
        self._valid_checks = 0
        self._corrupted_entries = 0
        self._failed_checks = 0
        self._total_events = 0
        self._recovery_attempts = 0
        self._successful_recoveries = 0
        self._total_check_time = 0.0
        self._last_check: float | None = None

    @property
    def config(self) -> IntegrityConfig:
        return self._config

    @property
    def events(self) -> EventEmitter:
        return self._events

    def set_backup_provider(self, provider: BackupProvider | None) -> None:
        self._backup_provider = provider

    def update_config(self, config: IntegrityConfig) -> None:
        """Replace the configuration, keeping recorded events up to the new cap."""
        with self._lock:
            self._config = config
            self._corruption_events = deque(
                self._corruption_events, maxlen=config.max_corruption_events
            )

    # Single entry checks
    def check_entry_integrity(self, key: str, entry: CacheEntry) -> IntegrityCheckResult:
        """
        Run every enabled validation on one entry.

        All validations run even when an earlier one fails, so every applicable
        corruption type is recorded in one pass.

        Args:
            key: The key the entry is stored under
            entry: The decoded cache entry

        Returns:
            IntegrityCheckResult; success=False means the check itself failed
        """
        start = time.perf_counter()
        return self._conclude(key, entry, self._inspect(entry), start)

    def _inspect(self, entry: CacheEntry) -> _Inspection:
        # No side effects, so a worker running this can be abandoned on timeout.
        config = self._config
        inspection = _Inspection()
        found = inspection.found

        try:
            if entry.data is None:
                found.append((CorruptionType.DATA_MISSING, "data", None))
            else:
                serialized = self._serialize(entry.data)
                if serialized is None and not config.enable_structure_validation:
                    raise ValueError("Entry data is not JSON-serializable")

                if serialized is not None:
                    data_size = len(serialized.encode("utf-8"))
                    inspection.data_size = data_size

                    if config.enable_checksum_validation and entry.integrity.checksum:
                        expected_checksum = entry.integrity.checksum
                        actual_checksum = checksum_of_text(serialized, entry.integrity.algorithm)
                        inspection.expected_checksum = expected_checksum
                        inspection.actual_checksum = actual_checksum
                        if actual_checksum != expected_checksum:
                            found.append(
                                (
                                    CorruptionType.CHECKSUM_MISMATCH,
                                    expected_checksum,
                                    actual_checksum,
                                )
                            )

                    if config.enable_size_validation and entry.size != data_size:
                        found.append((CorruptionType.SIZE_MISMATCH, entry.size, data_size))

                if config.enable_structure_validation and not self._structure_round_trips(
                    serialized
                ):
                    found.append((CorruptionType.STRUCTURE_INVALID, None, None))
        except Exception as exc:  # noqa: BLE001
            inspection.error = str(exc)
        return inspection

    def _conclude(
        self, key: str, entry: CacheEntry, inspection: _Inspection, start: float
    ) -> IntegrityCheckResult:
        if inspection.error is not None:
            logger.warning(f"Integrity check failed for '{key}': {inspection.error}")
            return self._failed_check(key, inspection.error, start)
        return self._finish_check(
            key,
            entry,
            inspection.found,
            start,
            data_size=inspection.data_size,
            expected_checksum=inspection.expected_checksum,
            actual_checksum=inspection.actual_checksum,
        )

    def _failed_check(self, key: str, error: str, start: float) -> IntegrityCheckResult:
        duration = time.perf_counter() - start
        self._record_check(success=False, is_valid=False, duration=duration)
        return IntegrityCheckResult(
            key=key,
            success=False,
            is_valid=False,
            duration=duration,
            timestamp=self._clock(),
            error=error,
        )

    def check_raw_entry(self, key: str, raw: bytes | None) -> IntegrityCheckResult:
        """
        Validate a payload as read from a storage backend.

        A missing payload is recorded as data_missing and an undecodable one as
        structure_invalid; decodable payloads go through check_entry_integrity.
        """
        start = time.perf_counter()
        if raw is None:
            return self._finish_check(
                key, None, [(CorruptionType.DATA_MISSING, "payload", None)], start
            )
        try:
            entry = CacheEntry.from_bytes(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.debug(f"Cache entry '{key}' could not be decoded: {exc}")
            return self._finish_check(
                key,
                None,
                [(CorruptionType.STRUCTURE_INVALID, "cache entry", type(exc).__name__)],
                start,
                data_size=len(raw),
            )
        return self.check_entry_integrity(key, entry)

    # Batch checks
    def check_batch_integrity(
        self, cache_snapshot: Mapping[str, CacheEntry]
    ) -> BatchIntegrityResult:
        """
        Check many entries, in batches of max_check_batch_size.

        Within a batch, checks run on a thread pool when parallel checking is
        enabled. An exception or timeout for one entry counts as a failed
        check and never aborts the batch.
        """
        start = time.perf_counter()
        results: dict[str, IntegrityCheckResult] = {}
        failed_keys: list[str] = []

        entries = list(cache_snapshot.items())
        batch_size = self._config.max_check_batch_size

        for offset in range(0, len(entries), batch_size):
            batch = entries[offset : offset + batch_size]
            if self._config.enable_parallel_check and len(batch) > 1:
                self._run_parallel(batch, results)
            else:
                for key, entry in batch:
                    try:
                        results[key] = self.check_entry_integrity(key, entry)
                    except Exception as exc:  # noqa: BLE001
                        logger.warning(f"Integrity check crashed for '{key}': {exc}")
                        failed_keys.append(key)

        valid_entries = 0
        corrupted_keys: list[str] = []
        for key, result in results.items():
            if not result.success:
                failed_keys.append(key)
            elif result.is_valid:
                valid_entries += 1
            else:
                corrupted_keys.append(key)

        return BatchIntegrityResult(
            total_checked=len(entries),
            valid_entries=valid_entries,
            corrupted_entries=len(corrupted_keys),
            failed_checks=len(failed_keys),
            corrupted_keys=corrupted_keys,
            failed_keys=failed_keys,
            duration=time.perf_counter() - start,
            timestamp=self._clock(),
            results=results,
        )

    def _run_parallel(
        self,
        batch: list[tuple[str, CacheEntry]],
        results: dict[str, IntegrityCheckResult],
    ) -> None:
        # Workers only inspect. Stats, events and recovery run on this thread,
        # so a check abandoned after its timeout leaves nothing behind.
        workers = min(self._config.max_workers, len(batch))
        pool = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [
                (key, entry, time.perf_counter(), pool.submit(self._inspect, entry))
                for key, entry in batch
            ]
            for key, entry, start, future in futures:
                try:
                    inspection = future.result(timeout=self._config.check_timeout_seconds)
                except FutureTimeoutError:
                    logger.warning(f"Integrity check timed out for '{key}'")
                    future.cancel()
                    results[key] = self._failed_check(key, "Integrity check timed out", start)
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.warning(f"Integrity check crashed for '{key}': {exc}")
                    results[key] = self._failed_check(key, str(exc), start)
                    continue
                results[key] = self._conclude(key, entry, inspection, start)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    # Entry field validation
    def validate_cache_entry(self, entry: CacheEntry) -> EntryValidation:
        """Check an entry's bookkeeping fields without touching its data."""
        issues: list[str] = []
        recommendations: list[str] = []

        if not entry.key or not isinstance(entry.key, str):
            issues.append("Missing or invalid key")
            recommendations.append("Regenerate cache entry with valid key")

        if entry.data is None:
            issues.append("Missing data")
            recommendations.append("Remove corrupted entry from cache")

        if not isinstance(entry.size, int) or entry.size < 0:
            issues.append("Invalid size field")
            recommendations.append("Recalculate entry size")

        for name in ("created_at", "last_access_time"):
            value = getattr(entry, name)
            if not isinstance(value, (int, float)) or value < 0:
                issues.append(f"Invalid {name} timestamp")
                recommendations.append("Update timestamp to current time")

        if entry.expires_at is not None and (
            not isinstance(entry.expires_at, (int, float)) or entry.expires_at < entry.created_at
        ):
            issues.append("Invalid expires_at timestamp")
            recommendations.append("Recalculate expiration time")

        if not isinstance(entry.integrity.checksum, str) or not entry.integrity.checksum:
            issues.append("Invalid checksum in integrity record")
            recommendations.append("Recalculate checksum")

        return EntryValidation(
            is_valid=not issues, issues=issues, recommendations=recommendations
        )

    # Events and statistics
    def get_corruption_events(self, limit: int = 100) -> list[CorruptionEvent]:
        """Most recent corruption events, newest first."""
        with self._lock:
            recent = list(self._corruption_events)[-limit:] if limit > 0 else []
        return sorted(recent, key=lambda event: event.detected_at, reverse=True)

    def cleanup_corruption_events(self, cutoff: float) -> int:
        """Drop events detected before ``cutoff``. Returns how many were dropped."""
        with self._lock:
            kept = [event for event in self._corruption_events if event.detected_at >= cutoff]
            removed = len(self._corruption_events) - len(kept)
            self._corruption_events = deque(kept, maxlen=self._config.max_corruption_events)
        return removed

    def get_stats(self) -> IntegrityStats:
        with self._lock:
            total = self._total_checks
            return IntegrityStats(
                total_checks=total,
                valid_checks=self._valid_checks,
                corrupted_entries=self._corrupted_entries,
                failed_checks=self._failed_checks,
                corruption_events=self._total_events,
                recovery_attempts=self._recovery_attempts,
                successful_recoveries=self._successful_recoveries,
                average_check_time=self._total_check_time / total if total else 0.0,
                corruption_rate=(self._corrupted_entries / total) * 100 if total else 0.0,
                last_check=self._last_check,
            )

    def shutdown(self) -> None:
        with self._lock:
            self._corruption_events.clear()
            self._recovery_attempts_by_key.clear()

    # Internal helpers
    @staticmethod
    def _serialize(data: Any) -> str | None:
        try:
            return canonical_json(data)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _structure_round_trips(serialized: str | None) -> bool:
        if serialized is None:
            return False
        try:
            return canonical_json(json.loads(serialized)) == serialized
        except (TypeError, ValueError):
            return False

    def _finish_check(
        self,
        key: str,
        entry: CacheEntry | None,
        found: list[tuple[CorruptionType, Any, Any]],
        start: float,
        data_size: int = 0,
        expected_checksum: str | None = None,
        actual_checksum: str | None = None,
    ) -> IntegrityCheckResult:
        now = self._clock()
        restored: CacheEntry | None = None
        for corruption_type, expected, actual in found:
            event = CorruptionEvent(
                key=key,
                type=corruption_type,
                detected_at=now,
                expected=expected,
                actual=actual,
            )
            candidate = self._handle_corruption(event)
            if candidate is not None:
                restored = candidate

        is_valid = not found
        if entry is not None:
            entry.integrity.status = (
                VerificationStatus.VERIFIED if is_valid else VerificationStatus.CORRUPTED
            )
            entry.integrity.verified_at = now
        if is_valid:
            with self._lock:
                self._recovery_attempts_by_key.pop(key, None)

        duration = time.perf_counter() - start
        self._record_check(success=True, is_valid=is_valid, duration=duration)
        return IntegrityCheckResult(
            key=key,
            success=True,
            is_valid=is_valid,
            duration=duration,
            timestamp=now,
            data_size=data_size,
            expected_checksum=expected_checksum,
            actual_checksum=actual_checksum,
            corruption_types=[corruption_type for corruption_type, _, _ in found],
            restored_entry=restored,
        )

    def _handle_corruption(self, event: CorruptionEvent) -> CacheEntry | None:
        logger.warning(f"Corruption detected in '{event.key}': {event.type.value}")
        with self._lock:
            self._corruption_events.append(event)
            self._total_events += 1

        restored = None
        if self._config.enable_auto_recovery:
            restored = self._attempt_recovery(event)
        else:
            event.recovery_action = RecoveryAction.NONE
            event.recovery_success = False

        self._events.emit(EventType.CORRUPTION_DETECTED, event)
        return restored

    def _attempt_recovery(self, event: CorruptionEvent) -> CacheEntry | None:
        with self._lock:
            attempts = self._recovery_attempts_by_key[event.key]
            if attempts >= self._config.max_recovery_attempts:
                event.recovery_action = RecoveryAction.NONE
                event.recovery_success = False
                logger.info(
                    f"Recovery for '{event.key}' skipped after {attempts} attempts"
                )
                return None
            self._recovery_attempts_by_key[event.key] = attempts + 1
            self._recovery_attempts += 1

        strategy = self._config.recovery_strategy
        restored: CacheEntry | None = None
        if strategy is RecoveryStrategy.REMOVE:
            # The caller owns the storage and performs the actual removal
            event.recovery_action = RecoveryAction.REMOVED
            event.recovery_success = True
        elif strategy is RecoveryStrategy.RESTORE:
            event.recovery_action = RecoveryAction.RESTORED
            restored = self._restore_from_backup(event.key)
            event.recovery_success = restored is not None
        else:
            event.recovery_action = RecoveryAction.NONE
            event.recovery_success = True

        if event.recovery_success:
            with self._lock:
                self._successful_recoveries += 1
        return restored

    def _restore_from_backup(self, key: str) -> CacheEntry | None:
        if self._backup_provider is None:
            logger.info(f"No backup provider configured, cannot restore '{key}'")
            return None
        try:
            candidate = self._backup_provider(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Backup lookup failed for '{key}': {exc}")
            return None
        if candidate is None or not self._is_intact(candidate):
            logger.warning(f"No intact backup available for '{key}'")
            return None
        candidate.integrity.status = VerificationStatus.VERIFIED
        candidate.integrity.verified_at = self._clock()
        return candidate

    @staticmethod
    def _is_intact(entry: CacheEntry) -> bool:
        if entry.data is None:
            return False
        try:
            serialized = canonical_json(entry.data)
            checksum = checksum_of_text(serialized, entry.integrity.algorithm)
        except (TypeError, ValueError):
            return False
        return checksum == entry.integrity.checksum and entry.size == len(
            serialized.encode("utf-8")
        )

    def _record_check(self, success: bool, is_valid: bool, duration: float) -> None:
        with self._lock:
            self._total_checks += 1
            if not success:
                self._failed_checks += 1
            elif is_valid:
                self._valid_checks += 1
            else:
                self._corrupted_entries += 1
            self._total_check_time += duration
            self._last_check = self._clock()
