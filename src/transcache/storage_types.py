"""
Storage Types and Data Classes

This module contains the core data structures and enums used by the quota
manager and the storage backends.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class StorageTier(Enum):
    """Storage tiers, each with its own byte quota and item limit."""

    LOCAL = "local"
    SYNC = "sync"
    SESSION = "session"
    MEMORY = "memory"


class QuotaStatus(Enum):
    """Pressure classification of a tier."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"
    UNKNOWN = "unknown"


class ItemPriority(Enum):
    """Declared importance of a stored item."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ItemPriority.LOW: 0,
    ItemPriority.NORMAL: 1,
    ItemPriority.HIGH: 2,
    ItemPriority.CRITICAL: 3,
}


class CleanupStrategy(Enum):
    """Eviction strategies the quota manager can plan with."""

    LRU = "lru"
    SIZE_BASED = "size_based"
    AGE_BASED = "age_based"
    PRIORITY_BASED = "priority_based"
    SMART = "smart"


class PlanPriority(Enum):
    """Urgency of a cleanup plan."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def order(self) -> int:
        return _PLAN_ORDER[self]


_PLAN_ORDER = {
    PlanPriority.URGENT: 0,
    PlanPriority.HIGH: 1,
    PlanPriority.MEDIUM: 2,
    PlanPriority.LOW: 3,
}


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Key prefix -> item category
CATEGORY_PREFIXES: dict[str, str] = {
    "config_": "config",
    "cache_": "cache",
    "transcription_": "transcription",
    "temp_": "temporary",
}


def categorize_key(key: str) -> str:
    """Derive an item category from its key prefix."""
    for prefix, category in CATEGORY_PREFIXES.items():
        if key.startswith(prefix):
            return category
    return "unknown"


@dataclass(frozen=True)
class TierLimits:
    """Fixed limits of one storage tier."""

    max_bytes: int
    max_items: int
    max_bytes_per_item: int


DEFAULT_TIER_LIMITS: dict[StorageTier, TierLimits] = {
    StorageTier.LOCAL: TierLimits(
        max_bytes=10 * 1024 * 1024,  # 10MB
        max_items=1000,
        max_bytes_per_item=1024 * 1024,
    ),
    StorageTier.SYNC: TierLimits(
        max_bytes=100 * 1024,  # 100KB
        max_items=512,
        max_bytes_per_item=8 * 1024,
    ),
    StorageTier.SESSION: TierLimits(
        max_bytes=10 * 1024 * 1024,
        max_items=1000,
        max_bytes_per_item=1024 * 1024,
    ),
    StorageTier.MEMORY: TierLimits(
        max_bytes=50 * 1024 * 1024,  # 50MB
        max_items=2000,
        max_bytes_per_item=5 * 1024 * 1024,
    ),
}


@dataclass
class StorageItem:
    """Metadata for one stored entry. The payload itself lives in the backend."""

    key: str
    size: int
    created_at: float
    last_accessed: float
    access_count: int = 0
    priority: ItemPriority = ItemPriority.NORMAL
    cleanup_allowed: bool = True
    category: str = ""

    def __post_init__(self) -> None:
        if not self.category:
            self.category = categorize_key(self.key)

    def touch(self, now: float) -> None:
        self.last_accessed = now
        self.access_count += 1


@dataclass(frozen=True)
class GrowthPoint:
    """One sample in a tier's growth window."""

    timestamp: float
    used_bytes: int
    item_count: int


@dataclass(frozen=True)
class QuotaSnapshot:
    """Point-in-time usage measurement of a tier."""

    tier: StorageTier
    used_bytes: int
    available_bytes: int
    quota_bytes: int
    usage_percentage: float
    status: QuotaStatus
    item_count: int
    max_items: int
    item_usage_percentage: float
    average_item_size: float
    largest_item_size: int
    growth_rate: float  # bytes per hour
    time_until_full: float | None  # seconds
    rapid_growth: bool
    measured_at: float

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tier"] = self.tier.value
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class RiskAssessment:
    level: RiskLevel
    description: str
    reversible: bool = False


@dataclass(frozen=True)
class CleanupPlan:
    """An immutable cleanup recommendation, executed at most once."""

    id: str
    strategy: CleanupStrategy
    tier: StorageTier
    estimated_bytes_freed: int
    affected_keys: tuple[str, ...]
    priority: PlanPriority
    risk: RiskAssessment
    title: str
    description: str
    estimated_duration_ms: int
    created_at: float

    @property
    def items_to_remove(self) -> int:
        return len(self.affected_keys)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "strategy": self.strategy.value,
            "tier": self.tier.value,
            "estimated_bytes_freed": self.estimated_bytes_freed,
            "items_to_remove": self.items_to_remove,
            "affected_keys": list(self.affected_keys),
            "priority": self.priority.value,
            "risk": {
                "level": self.risk.level.value,
                "description": self.risk.description,
                "reversible": self.risk.reversible,
            },
            "title": self.title,
            "description": self.description,
            "estimated_duration_ms": self.estimated_duration_ms,
            "created_at": self.created_at,
        }


@dataclass
class CleanupResult:
    """Outcome of executing a cleanup plan."""

    plan_id: str
    success: bool
    bytes_freed: int
    items_removed: int
    duration: float
    executed_at: float
    strategy: CleanupStrategy | None = None
    removed_keys: list[str] = field(default_factory=list)
    failed_keys: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def partial(self) -> bool:
        """True when some keys were removed and others failed."""
        return bool(self.removed_keys) and bool(self.failed_keys)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["strategy"] = self.strategy.value if self.strategy else None
        data["partial"] = self.partial
        return data


@dataclass
class QuotaManagerStats:
    """Running cleanup statistics."""

    total_cleanups: int = 0
    successful_cleanups: int = 0
    total_bytes_freed: int = 0
    total_items_removed: int = 0
    cleanup_success_rate: float = 0.0
    average_bytes_freed_per_cleanup: float = 0.0
    cleanups_by_strategy: dict[CleanupStrategy, int] = field(
        default_factory=lambda: {strategy: 0 for strategy in CleanupStrategy}
    )
    warning_events: int = 0
    critical_events: int = 0
    auto_cleanups: int = 0
    manual_cleanups: int = 0
    last_cleanup: float | None = None
