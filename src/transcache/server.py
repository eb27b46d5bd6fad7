import json
import logging
import os
import sys
import tempfile
from typing import Any

# FastMCP 2.0 import
from fastmcp import FastMCP

from .base_storage_backend import StorageBackend
from .config import IntegrityConfig, QuotaConfig
from .events import EventEmitter, EventType
from .integrity_checker import IntegrityChecker
from .quota_manager import PRESSURE_STATUSES, QuotaManager
from .storage_types import QuotaSnapshot, StorageTier
from .system_utils import log_system_status
from .tiered_backend import TieredStorageBackend

logger = logging.getLogger(__name__)

SERVER_NAME = "Transcache Storage Manager"

# Create FastMCP instance
mcp = FastMCP(SERVER_NAME)


def parse_tier(tier: str) -> StorageTier:
    """Resolve a tier name, raising ValueError with the valid names."""
    try:
        return StorageTier(tier.strip().lower())
    except ValueError as exc:
        valid = ", ".join(member.value for member in StorageTier)
        raise ValueError(f"Unknown storage tier '{tier}' (valid: {valid})") from exc


# StorageService wires the backend, integrity checker and quota manager together
class StorageService:
    def __init__(
        self,
        backend: StorageBackend | None = None,
        quota_config: QuotaConfig | None = None,
        integrity_config: IntegrityConfig | None = None,
    ):
        if backend is None:
            cache_dir = os.environ.get("TRANSCACHE_CACHE_DIR") or os.path.join(
                tempfile.gettempdir(), "transcache"
            )
            os.makedirs(cache_dir, exist_ok=True)
            backend = TieredStorageBackend(cache_dir=cache_dir)

        self.backend = backend
        self.events = EventEmitter()
        self.integrity_checker = IntegrityChecker(integrity_config, events=self.events)
        self.quota_manager = QuotaManager(
            backend,
            quota_config or QuotaConfig.from_env(),
            integrity_checker=self.integrity_checker,
            events=self.events,
        )
        self.events.subscribe(EventType.QUOTA_STATUS_CHANGED, self._on_status_changed)

        print(
            f"[transcache] StorageService initialized with {backend.__class__.__name__}",
            file=sys.stderr,
        )

    def log_system_status(self) -> None:
        log_system_status(self.quota_manager, self.backend.__class__.__name__)

    def quota_status(self, tier: str | None = None) -> str:
        if tier:
            snapshots = [self.quota_manager.get_quota_info(parse_tier(tier))]
        else:
            snapshots = list(self.quota_manager.force_quota_check().values())
        return _to_json([snapshot.to_dict() for snapshot in snapshots])

    def cleanup_recommendations(self, tier: str) -> str:
        snapshot = self.quota_manager.get_quota_info(parse_tier(tier))
        # get_quota_info already planned for a tier under pressure
        plans = []
        if snapshot.status in PRESSURE_STATUSES:
            plans = self.quota_manager.get_latest_recommendations(snapshot.tier)
        if not plans:
            return f"No cleanup recommended for {snapshot.tier.value} ({snapshot.status.value})"
        return _to_json([plan.to_dict() for plan in plans])

    def execute_cleanup(self, plan_id: str) -> str:
        result = self.quota_manager.execute_cleanup(plan_id.strip())
        return _to_json(result.to_dict())

    def integrity_sweep(self, tier: str) -> str:
        sweep = self.quota_manager.sweep_integrity(parse_tier(tier))
        batch = sweep.batch
        return _to_json(
            {
                "tier": sweep.tier.value,
                "total_checked": batch.total_checked,
                "valid_entries": batch.valid_entries,
                "corrupted_keys": batch.corrupted_keys,
                "failed_keys": batch.failed_keys,
                "removed_keys": sweep.removed_keys,
                "restored_keys": sweep.restored_keys,
            }
        )

    def storage_stats(self) -> str:
        quota_stats = self.quota_manager.get_stats()
        integrity_stats = self.integrity_checker.get_stats()
        return _to_json(
            {
                "quota": {
                    "total_cleanups": quota_stats.total_cleanups,
                    "successful_cleanups": quota_stats.successful_cleanups,
                    "cleanup_success_rate": quota_stats.cleanup_success_rate,
                    "total_bytes_freed": quota_stats.total_bytes_freed,
                    "total_items_removed": quota_stats.total_items_removed,
                    "average_bytes_freed_per_cleanup": (
                        quota_stats.average_bytes_freed_per_cleanup
                    ),
                    "auto_cleanups": quota_stats.auto_cleanups,
                    "manual_cleanups": quota_stats.manual_cleanups,
                    "cleanups_by_strategy": {
                        strategy.value: count
                        for strategy, count in quota_stats.cleanups_by_strategy.items()
                    },
                },
                "integrity": {
                    "total_checks": integrity_stats.total_checks,
                    "valid_checks": integrity_stats.valid_checks,
                    "corrupted_entries": integrity_stats.corrupted_entries,
                    "failed_checks": integrity_stats.failed_checks,
                    "corruption_rate": integrity_stats.corruption_rate,
                    "recovery_attempts": integrity_stats.recovery_attempts,
                    "successful_recoveries": integrity_stats.successful_recoveries,
                },
            }
        )

    def corruption_events(self, limit: int = 50) -> str:
        events = self.integrity_checker.get_corruption_events(limit)
        if not events:
            return "No corruption detected"
        return _to_json([event.to_dict() for event in events])

    def _on_status_changed(self, snapshot: QuotaSnapshot) -> None:
        logger.info(
            f"Tier {snapshot.tier.value} changed to {snapshot.status.value} "
            f"({snapshot.usage_percentage:.1f}%)"
        )


def _to_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


storage_service = StorageService()


# === TOOLS ===
@mcp.tool
def quota_status(tier: str | None = None) -> str:
    """Measure storage usage and quota status.

    Args:
        tier: One of local, sync, session, memory. All tiers when omitted.

    Returns:
        JSON list of quota snapshots
    """
    storage_service.log_system_status()
    return storage_service.quota_status(tier)


@mcp.tool
def cleanup_recommendations(tier: str) -> str:
    """Generate cleanup plans for a tier, most urgent first.

    Args:
        tier: The storage tier to plan for

    Returns:
        JSON list of cleanup plans (use their id with execute_cleanup)
    """
    return storage_service.cleanup_recommendations(tier)


@mcp.tool
def execute_cleanup(plan_id: str) -> str:
    """Execute a previously generated cleanup plan. Each plan runs at most once.

    Args:
        plan_id: Id of a plan returned by cleanup_recommendations

    Returns:
        JSON cleanup result
    """
    result = storage_service.execute_cleanup(plan_id)
    storage_service.log_system_status()
    return result


@mcp.tool
def integrity_sweep(tier: str) -> str:
    """Validate cached entries of a tier and remove or restore corrupted ones."""
    return storage_service.integrity_sweep(tier)


@mcp.tool
def storage_stats() -> str:
    """Cleanup and integrity statistics since the server started."""
    return storage_service.storage_stats()


# === RESOURCES ===
@mcp.resource("transcache://corruption-events")
def get_corruption_events() -> str:
    """Most recent corruption events, newest first."""
    return storage_service.corruption_events()


# === MAIN ENTRY POINT ===
def main():
    """Main entry point for the FastMCP 2.0 server."""
    root_logger = logging.getLogger("transcache")
    # Ensure logs are visible in the FastMCP subprocess even if no handlers configured
    if not root_logger.handlers:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setLevel(logging.INFO)
        _handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        root_logger.addHandler(_handler)
    root_logger.setLevel(logging.INFO)
    logger.info("Starting transcache storage manager")
    mcp.run()


if __name__ == "__main__":
    main()
