"""
Quota Manager

Keeps each storage tier within its limits. Usage is sampled per tier into
immutable QuotaSnapshots; under pressure the manager scores the tier's items
with every cleanup strategy, keeps the resulting plans pending and executes
them on request (or the smart plan automatically above the auto cleanup
threshold).

Monitoring never raises: backend failures degrade to an ``unknown`` snapshot,
and per-key failures during cleanup are logged and skipped.
"""

from __future__ import annotations

import logging
import math
import threading
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace

from .base_storage_backend import StorageBackend
from .cache_entry import CacheEntry
from .config import QuotaConfig
from .entry_store import write_restored_entry
from .errors import ConfigurationError
from .events import EventEmitter, EventType
from .eviction import order_for_strategy, select_items_for_cleanup
from .integrity_checker import BatchIntegrityResult, IntegrityChecker
from .storage_types import (
    CleanupPlan,
    CleanupResult,
    CleanupStrategy,
    GrowthPoint,
    PlanPriority,
    QuotaManagerStats,
    QuotaSnapshot,
    QuotaStatus,
    RiskAssessment,
    RiskLevel,
    StorageItem,
    StorageTier,
)

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0

# Keys holding CacheEntry payloads, the ones an integrity sweep understands
CACHE_KEY_PREFIXES = ("cache_", "transcription_")

PRESSURE_STATUSES = frozenset({QuotaStatus.WARNING, QuotaStatus.CRITICAL, QuotaStatus.EXCEEDED})


@dataclass(frozen=True)
class _StrategyProfile:
    title: str
    description: str
    risk: RiskAssessment
    ms_per_item: int


_STRATEGY_PROFILES: dict[CleanupStrategy, _StrategyProfile] = {
    CleanupStrategy.LRU: _StrategyProfile(
        title="Remove Least Recently Used Items",
        description="Remove {count} items that haven't been accessed recently",
        risk=RiskAssessment(RiskLevel.LOW, "Low risk - removes least recently used items"),
        ms_per_item=10,
    ),
    CleanupStrategy.SIZE_BASED: _StrategyProfile(
        title="Remove Largest Items",
        description="Remove {count} largest items to quickly free space",
        risk=RiskAssessment(
            RiskLevel.MEDIUM, "Medium risk - removes largest items which might be important"
        ),
        ms_per_item=15,
    ),
    CleanupStrategy.AGE_BASED: _StrategyProfile(
        title="Remove Oldest Items",
        description="Remove {count} oldest items",
        risk=RiskAssessment(RiskLevel.LOW, "Low risk - removes oldest items"),
        ms_per_item=10,
    ),
    CleanupStrategy.PRIORITY_BASED: _StrategyProfile(
        title="Remove Low Priority Items",
        description="Remove {count} low priority items",
        risk=RiskAssessment(RiskLevel.LOW, "Low risk - removes only low priority items"),
        ms_per_item=8,
    ),
    CleanupStrategy.SMART: _StrategyProfile(
        title="Smart Cleanup",
        description=(
            "Intelligently remove {count} items based on usage patterns and importance"
        ),
        risk=RiskAssessment(RiskLevel.LOW, "Low risk - uses intelligent selection algorithm"),
        ms_per_item=12,
    ),
}


def reaches_threshold(used_bytes: int, quota_bytes: int, threshold: float) -> bool:
    """Whether usage is at or above a percentage threshold, without dividing."""
    return used_bytes * 100 >= threshold * quota_bytes


def classify_usage(used_bytes: int, quota_bytes: int, config: QuotaConfig) -> QuotaStatus:
    """Map byte usage onto a quota status."""
    if used_bytes >= quota_bytes:
        return QuotaStatus.EXCEEDED
    if reaches_threshold(used_bytes, quota_bytes, config.critical_threshold):
        return QuotaStatus.CRITICAL
    if reaches_threshold(used_bytes, quota_bytes, config.warning_threshold):
        return QuotaStatus.WARNING
    return QuotaStatus.HEALTHY


def plan_priority_for(strategy: CleanupStrategy, status: QuotaStatus) -> PlanPriority:
    severe = status in (QuotaStatus.CRITICAL, QuotaStatus.EXCEEDED)
    if strategy is CleanupStrategy.LRU:
        return PlanPriority.HIGH if severe else PlanPriority.MEDIUM
    if strategy is CleanupStrategy.SIZE_BASED:
        return PlanPriority.MEDIUM
    if strategy is CleanupStrategy.AGE_BASED:
        return PlanPriority.LOW
    if strategy is CleanupStrategy.PRIORITY_BASED:
        return PlanPriority.HIGH
    return PlanPriority.URGENT if severe else PlanPriority.HIGH


@dataclass
class IntegritySweepResult:
    """Outcome of validating the cache entries of one tier."""

    tier: StorageTier
    batch: BatchIntegrityResult
    removed_keys: list[str] = field(default_factory=list)
    restored_keys: list[str] = field(default_factory=list)


class QuotaManager:
    """
    Per-tier quota monitoring, cleanup planning and cleanup execution.

    All state (growth windows, last snapshots, pending plans, statistics) is
    owned by the instance and released by ``shutdown()``.
    """

    def __init__(
        self,
        backend: StorageBackend,
        config: QuotaConfig | None = None,
        integrity_checker: IntegrityChecker | None = None,
        events: EventEmitter | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize QuotaManager.

        Args:
            backend: Storage backend for every tier
            config: Thresholds, limits and strategy settings
            integrity_checker: Optional checker used by ``sweep_integrity``
            events: Emitter for quota and cleanup notifications
            clock: Time source in epoch seconds
        """
        self._backend = backend
        self._config = config or QuotaConfig()
        self._integrity_checker = integrity_checker
        self._events = events or EventEmitter()
        self._clock = clock

        self._lock = threading.RLock()
        self._growth_history: dict[StorageTier, deque[GrowthPoint]] = {
            tier: deque() for tier in StorageTier
        }
        self._last_snapshots: dict[StorageTier, QuotaSnapshot] = {}
        self._pending_plans: OrderedDict[str, CleanupPlan] = OrderedDict()
        self._latest_plan_ids: dict[StorageTier, list[str]] = {}
        self._stats = QuotaManagerStats()

    @property
    def config(self) -> QuotaConfig:
        return self._config

    @property
    def events(self) -> EventEmitter:
        return self._events

    @property
    def integrity_checker(self) -> IntegrityChecker | None:
        return self._integrity_checker

    # Monitoring
    def get_quota_info(self, tier: StorageTier) -> QuotaSnapshot:
        """
        Measure a tier and react to pressure.

        Returns a snapshot with status ``unknown`` and zero values when the
        backend cannot be queried. Under pressure, cleanup recommendations are
        generated and, above the auto cleanup threshold, the smart plan runs.

        Args:
            tier: The storage tier to measure

        Returns:
            The new QuotaSnapshot
        """
        snapshot = self._measure(tier)

        with self._lock:
            previous = self._last_snapshots.get(tier)
            self._last_snapshots[tier] = snapshot
            status_changed = previous is None or previous.status is not snapshot.status
            if status_changed:
                if snapshot.status is QuotaStatus.WARNING:
                    self._stats.warning_events += 1
                elif snapshot.status in (QuotaStatus.CRITICAL, QuotaStatus.EXCEEDED):
                    self._stats.critical_events += 1

        if status_changed:
            logger.info(
                f"Quota status for {tier.value} is now {snapshot.status.value} "
                f"({snapshot.usage_percentage:.1f}% used)"
            )
            self._events.emit(EventType.QUOTA_STATUS_CHANGED, snapshot)

        if snapshot.status in PRESSURE_STATUSES:
            plans = self.generate_cleanup_recommendations(snapshot)
            if (
                self._config.enable_auto_cleanup
                and reaches_threshold(
                    snapshot.used_bytes, snapshot.quota_bytes, self._config.auto_cleanup_threshold
                )
            ):
                smart_plan = next(
                    (plan for plan in plans if plan.strategy is CleanupStrategy.SMART), None
                )
                if smart_plan is not None:
                    logger.info(f"Running automatic smart cleanup on {tier.value}")
                    self._execute(smart_plan.id, automatic=True)

        return snapshot

    def force_quota_check(self) -> dict[StorageTier, QuotaSnapshot]:
        """Measure every tier."""
        return {tier: self.get_quota_info(tier) for tier in StorageTier}

    def can_store(self, tier: StorageTier, size: int) -> bool:
        """Whether an item of ``size`` bytes fits the tier's per-item and total limits."""
        limits = self._config.limits[tier]
        if size > limits.max_bytes_per_item:
            return False
        try:
            used = self._backend.bytes_in_use(tier)
            item_count = len(self._backend.list_keys(tier))
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not read usage of {tier.value}: {exc}")
            return False
        return used + size <= limits.max_bytes and item_count < limits.max_items

    def get_last_snapshot(self, tier: StorageTier) -> QuotaSnapshot | None:
        with self._lock:
            return self._last_snapshots.get(tier)

    def get_growth_history(self, tier: StorageTier) -> list[GrowthPoint]:
        with self._lock:
            return list(self._growth_history[tier])

    # Planning
    def generate_cleanup_recommendations(self, snapshot: QuotaSnapshot) -> list[CleanupPlan]:
        """
        Build one cleanup plan per strategy for the snapshot's tier.

        Each strategy targets its own fraction of the current usage. Strategies
        that cannot select anything produce no plan. Plans are kept pending
        until executed and are returned most urgent first.
        """
        plans = self._plan_cleanup(snapshot)

        with self._lock:
            for plan in plans:
                self._pending_plans[plan.id] = plan
            self._latest_plan_ids[snapshot.tier] = [plan.id for plan in plans]
            self._trim_pending_plans()

        for plan in plans:
            self._events.emit(EventType.RECOMMENDATION_GENERATED, plan)
        logger.debug(f"Generated {len(plans)} cleanup plans for {snapshot.tier.value}")
        return plans

    def get_pending_plans(self) -> list[CleanupPlan]:
        with self._lock:
            return list(self._pending_plans.values())

    def get_latest_recommendations(self, tier: StorageTier) -> list[CleanupPlan]:
        """Plans from the tier's most recent generation that are still pending, most urgent first."""
        with self._lock:
            return [
                self._pending_plans[plan_id]
                for plan_id in self._latest_plan_ids.get(tier, [])
                if plan_id in self._pending_plans
            ]

    def get_pending_plan(self, plan_id: str) -> CleanupPlan | None:
        with self._lock:
            return self._pending_plans.get(plan_id)

    # Execution
    def execute_cleanup(self, plan_id: str) -> CleanupResult:
        """
        Execute a pending plan. A plan can be executed only once.

        Args:
            plan_id: Id of a plan returned by generate_cleanup_recommendations

        Returns:
            CleanupResult; an unknown id yields a failed result
        """
        return self._execute(plan_id, automatic=False)

    def _execute(self, plan_id: str, automatic: bool) -> CleanupResult:
        start = time.perf_counter()
        with self._lock:
            plan = self._pending_plans.pop(plan_id, None)
        if plan is None:
            logger.warning(f"Cleanup plan not found: {plan_id}")
            return CleanupResult(
                plan_id=plan_id,
                success=False,
                bytes_freed=0,
                items_removed=0,
                duration=time.perf_counter() - start,
                executed_at=self._clock(),
                error=f"Cleanup plan not found: {plan_id}",
            )

        removed_keys: list[str] = []
        failed_keys: list[str] = []
        bytes_freed = 0
        for key in plan.affected_keys:
            try:
                size = self._backend.get_item_size(plan.tier, key)
                self._backend.delete(plan.tier, key)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Failed to remove {plan.tier.value}/{key}: {exc}")
                failed_keys.append(key)
                continue
            bytes_freed += size
            removed_keys.append(key)

        result = CleanupResult(
            plan_id=plan.id,
            success=bool(removed_keys),
            bytes_freed=bytes_freed,
            items_removed=len(removed_keys),
            duration=time.perf_counter() - start,
            executed_at=self._clock(),
            strategy=plan.strategy,
            removed_keys=removed_keys,
            failed_keys=failed_keys,
            error=f"Failed to remove {len(failed_keys)} items" if failed_keys else None,
        )
        self._record_cleanup(result, automatic)

        logger.info(
            f"Cleanup {plan.strategy.value} on {plan.tier.value} removed "
            f"{result.items_removed} items ({bytes_freed} bytes)"
        )
        self._events.emit(EventType.CLEANUP_COMPLETED, result)
        return result

    # Integrity
    def sweep_integrity(
        self,
        tier: StorageTier,
        key_prefixes: Iterable[str] | None = CACHE_KEY_PREFIXES,
    ) -> IntegritySweepResult:
        """
        Validate the cache entries of a tier and act on corrupted ones.

        Restored entries are written back. Otherwise corrupted entries are
        deleted under the ``remove`` strategy and left in place under
        ``notify`` or when auto recovery is off.

        Args:
            tier: The storage tier to sweep
            key_prefixes: Only keys with one of these prefixes are checked,
                None checks every key

        Raises:
            ConfigurationError: if the manager has no integrity checker
        """
        checker = self._integrity_checker
        if checker is None:
            raise ConfigurationError("sweep_integrity requires an IntegrityChecker")

        prefixes = tuple(key_prefixes) if key_prefixes is not None else None
        try:
            keys = self._backend.list_keys(tier)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not list keys of {tier.value}: {exc}")
            keys = []

        entries: dict[str, CacheEntry] = {}
        undecodable: dict[str, bytes | None] = {}
        unreadable: list[str] = []
        for key in keys:
            if prefixes is not None and not key.startswith(prefixes):
                continue
            try:
                raw = self._backend.get(tier, key)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Could not read {tier.value}/{key}: {exc}")
                unreadable.append(key)
                continue
            if raw is None:
                continue  # removed since listing
            try:
                entries[key] = CacheEntry.from_bytes(raw)
            except (ValueError, KeyError, TypeError):
                undecodable[key] = raw

        batch = checker.check_batch_integrity(entries)
        for key, raw in undecodable.items():
            result = checker.check_raw_entry(key, raw)
            batch.results[key] = result
            batch.total_checked += 1
            if result.success:
                batch.corrupted_entries += 1
                batch.corrupted_keys.append(key)
            else:
                batch.failed_checks += 1
                batch.failed_keys.append(key)
        batch.failed_keys.extend(unreadable)
        batch.failed_checks += len(unreadable)

        sweep = IntegritySweepResult(tier=tier, batch=batch)
        for key in batch.corrupted_keys:
            self._recover_entry(tier, key, batch, sweep)

        if batch.corrupted_keys or batch.failed_keys:
            logger.info(
                f"Integrity sweep of {tier.value}: {len(batch.corrupted_keys)} corrupted, "
                f"{len(batch.failed_keys)} failed, {len(sweep.removed_keys)} removed, "
                f"{len(sweep.restored_keys)} restored"
            )
        return sweep

    def _recover_entry(
        self,
        tier: StorageTier,
        key: str,
        batch: BatchIntegrityResult,
        sweep: IntegritySweepResult,
    ) -> None:
        checker_config = self._integrity_checker.config  # type: ignore[union-attr]
        result = batch.results.get(key)
        try:
            if result is not None and result.restored_entry is not None:
                write_restored_entry(self._backend, tier, key, result.restored_entry)
                sweep.restored_keys.append(key)
            elif checker_config.removes_corrupted_entries:
                self._backend.delete(tier, key)
                sweep.removed_keys.append(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not recover {tier.value}/{key}: {exc}")

    # Statistics and lifecycle
    def get_stats(self) -> QuotaManagerStats:
        with self._lock:
            return replace(
                self._stats, cleanups_by_strategy=dict(self._stats.cleanups_by_strategy)
            )

    def update_config(self, config: QuotaConfig) -> None:
        with self._lock:
            self._config = config
            self._trim_pending_plans()
            cutoff = self._clock() - config.growth_window_hours * SECONDS_PER_HOUR
            for history in self._growth_history.values():
                self._trim_growth(history, cutoff)
        logger.info("Quota manager configuration updated")

    def shutdown(self) -> None:
        """Drop all history, pending plans and listeners."""
        with self._lock:
            for history in self._growth_history.values():
                history.clear()
            self._last_snapshots.clear()
            self._pending_plans.clear()
            self._latest_plan_ids.clear()
        self._events.clear()

    # Internal helpers
    def _plan_cleanup(self, snapshot: QuotaSnapshot) -> list[CleanupPlan]:
        if snapshot.status is QuotaStatus.UNKNOWN or snapshot.used_bytes <= 0:
            return []

        try:
            items = self._backend.describe_items(snapshot.tier)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not read items of {snapshot.tier.value}: {exc}")
            return []

        now = self._clock()
        plans = [
            plan
            for strategy, fraction in self._config.strategy_targets.items()
            if (plan := self._build_plan(strategy, fraction, snapshot, items, now)) is not None
        ]
        plans.sort(key=lambda plan: (plan.priority.order, -plan.estimated_bytes_freed))
        return plans

    def _measure(self, tier: StorageTier) -> QuotaSnapshot:
        limits = self._config.limits[tier]
        now = self._clock()
        try:
            used_bytes = int(self._backend.bytes_in_use(tier))
            items = self._backend.describe_items(tier)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not measure quota of {tier.value}: {exc}")
            return self._unknown_snapshot(tier, now)

        item_count = len(items)
        usage_percentage = used_bytes / limits.max_bytes * 100
        status = classify_usage(used_bytes, limits.max_bytes, self._config)

        growth_rate = 0.0
        if self._config.track_growth:
            growth_rate = self._record_growth(tier, GrowthPoint(now, used_bytes, item_count))

        remaining = max(0, limits.max_bytes - used_bytes)
        time_until_full: float | None = None
        if remaining == 0:
            time_until_full = 0.0
        elif growth_rate > 0:
            time_until_full = remaining / growth_rate * SECONDS_PER_HOUR

        return QuotaSnapshot(
            tier=tier,
            used_bytes=used_bytes,
            available_bytes=remaining,
            quota_bytes=limits.max_bytes,
            usage_percentage=usage_percentage,
            status=status,
            item_count=item_count,
            max_items=limits.max_items,
            item_usage_percentage=item_count / limits.max_items * 100,
            average_item_size=used_bytes / item_count if item_count else 0.0,
            largest_item_size=max((item.size for item in items), default=0),
            growth_rate=growth_rate,
            time_until_full=time_until_full,
            rapid_growth=growth_rate >= self._config.growth_warning_bytes_per_hour,
            measured_at=now,
        )

    def _unknown_snapshot(self, tier: StorageTier, now: float) -> QuotaSnapshot:
        limits = self._config.limits[tier]
        return QuotaSnapshot(
            tier=tier,
            used_bytes=0,
            available_bytes=0,
            quota_bytes=limits.max_bytes,
            usage_percentage=0.0,
            status=QuotaStatus.UNKNOWN,
            item_count=0,
            max_items=limits.max_items,
            item_usage_percentage=0.0,
            average_item_size=0.0,
            largest_item_size=0,
            growth_rate=0.0,
            time_until_full=None,
            rapid_growth=False,
            measured_at=now,
        )

    def _record_growth(self, tier: StorageTier, point: GrowthPoint) -> float:
        """Append a point (if newer than the last) and return bytes per hour."""
        with self._lock:
            history = self._growth_history[tier]
            if not history or point.timestamp > history[-1].timestamp:
                history.append(point)
            cutoff = point.timestamp - self._config.growth_window_hours * SECONDS_PER_HOUR
            self._trim_growth(history, cutoff)
            if len(history) < 2:
                return 0.0
            oldest, newest = history[0], history[-1]
            elapsed_hours = (newest.timestamp - oldest.timestamp) / SECONDS_PER_HOUR
            if elapsed_hours <= 0:
                return 0.0
            return (newest.used_bytes - oldest.used_bytes) / elapsed_hours

    @staticmethod
    def _trim_growth(history: deque[GrowthPoint], cutoff: float) -> None:
        while history and history[0].timestamp < cutoff:
            history.popleft()

    def _trim_pending_plans(self) -> None:
        while len(self._pending_plans) > self._config.max_pending_plans:
            dropped_id, _ = self._pending_plans.popitem(last=False)
            logger.debug(f"Dropped stale cleanup plan {dropped_id}")

    def _build_plan(
        self,
        strategy: CleanupStrategy,
        fraction: float,
        snapshot: QuotaSnapshot,
        items: list[StorageItem],
        now: float,
    ) -> CleanupPlan | None:
        target_bytes = math.ceil(snapshot.used_bytes * fraction)
        ordered = order_for_strategy(strategy, items, now, self._config.smart_weights)
        selected = select_items_for_cleanup(ordered, target_bytes)
        if not selected:
            return None

        profile = _STRATEGY_PROFILES[strategy]
        return CleanupPlan(
            id=f"cleanup-{int(now * 1000)}-{uuid.uuid4().hex[:9]}",
            strategy=strategy,
            tier=snapshot.tier,
            estimated_bytes_freed=sum(item.size for item in selected),
            affected_keys=tuple(item.key for item in selected),
            priority=plan_priority_for(strategy, snapshot.status),
            risk=profile.risk,
            title=profile.title,
            description=profile.description.format(count=len(selected)),
            estimated_duration_ms=len(selected) * profile.ms_per_item,
            created_at=now,
        )

    def _record_cleanup(self, result: CleanupResult, automatic: bool) -> None:
        with self._lock:
            stats = self._stats
            stats.total_cleanups += 1
            if result.success:
                stats.successful_cleanups += 1
            stats.total_bytes_freed += result.bytes_freed
            stats.total_items_removed += result.items_removed
            if result.strategy is not None:
                stats.cleanups_by_strategy[result.strategy] = (
                    stats.cleanups_by_strategy.get(result.strategy, 0) + 1
                )
            if automatic:
                stats.auto_cleanups += 1
            else:
                stats.manual_cleanups += 1
            stats.last_cleanup = result.executed_at
            stats.cleanup_success_rate = stats.successful_cleanups / stats.total_cleanups * 100
            stats.average_bytes_freed_per_cleanup = (
                stats.total_bytes_freed / stats.successful_cleanups
                if stats.successful_cleanups
                else 0.0
            )
