import logging
import sys

import psutil

from .quota_manager import QuotaManager
from .slack_utils import send_slack_alert_if_needed
from .storage_types import QuotaStatus, StorageTier

logger = logging.getLogger(__name__)


def log_system_status(
    quota_manager: QuotaManager,
    backend_name: str,
    include_process_rss: bool = True,
) -> None:
    """Log tier usage and process memory, and send a Slack alert if configured."""
    try:
        process_rss_mb: int | None = None
        if include_process_rss:
            try:
                process_rss_mb = psutil.Process().memory_info().rss // (1024**2)
            except Exception:
                process_rss_mb = None

        tier_usage: dict[str, float] = {}
        for tier in StorageTier:
            snapshot = quota_manager.get_last_snapshot(tier)
            if snapshot is None or snapshot.status is QuotaStatus.UNKNOWN:
                continue
            tier_usage[tier.value] = snapshot.usage_percentage

        usage_text = ", ".join(f"{name}={pct:.1f}%" for name, pct in tier_usage.items())
        msg = (
            f"Backend={backend_name} | Tier usage: {usage_text or 'n/a'}"
            + (f" | Process RSS={process_rss_mb}MB" if process_rss_mb is not None else "")
        )
        logger.info(msg)
        print(f"[transcache] {msg}", file=sys.stderr, flush=True)

        send_slack_alert_if_needed(tier_usage, backend_name, process_rss_mb)
    except Exception as exc:  # pragma: no cover
        logger.debug(f"Failed to log system status: {exc}")
