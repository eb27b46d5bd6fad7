"""
Maintenance Scheduler

Drives periodic quota checks and integrity sweeps. ``tick()`` is synchronous
and clock-driven so it can be tested without waiting; ``start()`` runs it on a
daemon thread for long-lived processes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .quota_manager import QuotaManager
from .storage_types import StorageTier

logger = logging.getLogger(__name__)

QUOTA_CHECK = "quota_check"
INTEGRITY_SWEEP = "integrity_sweep"


@dataclass
class _Job:
    name: str
    interval: float
    run: Callable[[], None]
    next_run: float = 0.0


class MaintenanceScheduler:
    """Runs quota checks and integrity sweeps at fixed intervals."""

    def __init__(
        self,
        quota_manager: QuotaManager,
        tiers: Iterable[StorageTier] = tuple(StorageTier),
        quota_interval: float = 5 * 60,  # 5 minutes
        integrity_interval: float | None = 60 * 60,  # 1 hour
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize MaintenanceScheduler.

        Args:
            quota_manager: Manager whose checks are scheduled
            tiers: Tiers to check
            quota_interval: Seconds between quota checks
            integrity_interval: Seconds between integrity sweeps, None disables
                them; they are also skipped when the manager has no checker
            clock: Time source in epoch seconds
        """
        if quota_interval <= 0:
            raise ValueError("quota_interval must be positive")
        self._quota_manager = quota_manager
        self._tiers = tuple(tiers)
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        now = clock()
        self._jobs = [_Job(QUOTA_CHECK, quota_interval, self._check_quotas, now)]
        if integrity_interval is not None and quota_manager.integrity_checker is not None:
            if integrity_interval <= 0:
                raise ValueError("integrity_interval must be positive")
            self._jobs.append(
                _Job(INTEGRITY_SWEEP, integrity_interval, self._sweep_integrity, now)
            )

    @property
    def job_names(self) -> list[str]:
        return [job.name for job in self._jobs]

    def tick(self) -> list[str]:
        """Run every job that is due and return the names of the jobs that ran."""
        now = self._clock()
        ran = []
        for job in self._jobs:
            if now < job.next_run:
                continue
            try:
                job.run()
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Maintenance job {job.name} failed: {exc}")
            job.next_run = now + job.interval
            ran.append(job.name)
        return ran

    def start(self, poll_interval: float = 1.0) -> None:
        """Run ``tick()`` on a background daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(poll_interval,), name="transcache-maintenance", daemon=True
        )
        self._thread.start()
        logger.info("Maintenance scheduler started")

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Maintenance scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, poll_interval: float) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(poll_interval)

    def _check_quotas(self) -> None:
        for tier in self._tiers:
            self._quota_manager.get_quota_info(tier)

    def _sweep_integrity(self) -> None:
        for tier in self._tiers:
            self._quota_manager.sweep_integrity(tier)
