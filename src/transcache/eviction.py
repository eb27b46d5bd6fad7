"""
Eviction ordering for cleanup strategies.

Each strategy turns a list of StorageItems into the order in which they
should be removed; ``select_items_for_cleanup`` then takes items greedily
from the front until a byte target is met.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence

from .config import SmartScoreWeights
from .storage_types import CleanupStrategy, ItemPriority, StorageItem

SECONDS_PER_HOUR = 3600.0


def calculate_cleanup_score(
    item: StorageItem, now: float, weights: SmartScoreWeights
) -> float:
    """Smart eviction score. Lower scores are evicted first."""
    age_hours = (now - item.created_at) / SECONDS_PER_HOUR
    hours_since_access = max(0.0, (now - item.last_accessed) / SECONDS_PER_HOUR)

    score = weights.base_score
    score += weights.priority_weights.get(item.priority, 0.0)

    access_frequency = item.access_count / max(age_hours, 1.0)
    score += access_frequency * weights.access_frequency_multiplier

    score -= min(hours_since_access, weights.recency_cap_hours) * weights.recency_decay_per_hour
    score -= math.log(item.size + 1) * weights.size_log_weight

    return max(0.0, score)


def order_for_strategy(
    strategy: CleanupStrategy,
    items: Sequence[StorageItem],
    now: float,
    weights: SmartScoreWeights,
) -> list[StorageItem]:
    """Candidates for ``strategy`` in eviction order.

    Items that forbid cleanup are never candidates, and the priority-based
    strategy never considers critical items.
    """
    candidates = [item for item in items if item.cleanup_allowed]

    if strategy is CleanupStrategy.LRU:
        return sorted(candidates, key=lambda item: item.last_accessed)
    if strategy is CleanupStrategy.SIZE_BASED:
        return sorted(candidates, key=lambda item: item.size, reverse=True)
    if strategy is CleanupStrategy.AGE_BASED:
        return sorted(candidates, key=lambda item: item.created_at)
    if strategy is CleanupStrategy.PRIORITY_BASED:
        return sorted(
            (item for item in candidates if item.priority is not ItemPriority.CRITICAL),
            key=lambda item: item.priority.rank,
        )
    if strategy is CleanupStrategy.SMART:
        score: Callable[[StorageItem], float] = lambda item: calculate_cleanup_score(
            item, now, weights
        )
        return sorted(candidates, key=score)
    raise ValueError(f"Unknown cleanup strategy: {strategy}")


def select_items_for_cleanup(
    items: Sequence[StorageItem], target_bytes: int
) -> list[StorageItem]:
    """Take items in order until their cumulative size reaches ``target_bytes``."""
    selected: list[StorageItem] = []
    bytes_selected = 0
    for item in items:
        if bytes_selected >= target_bytes:
            break
        selected.append(item)
        bytes_selected += item.size
    return selected
