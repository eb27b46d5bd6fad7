import json
import os
import ssl
import sys
import urllib.request

import certifi


def send_slack_alert_if_needed(
    tier_usage: dict[str, float],
    backend_name: str,
    process_rss_mb: int | None = None,
) -> tuple[bool, int | None]:
    """Send a Slack alert via webhook if configured and any tier is over threshold.

    Returns a tuple: (attempted, status_code). If not attempted, status_code is None.
    """
    alerts_enabled = os.environ.get("TRANSCACHE_SLACK_ALERTS_ENABLED", "false").lower() in {
        "1",
        "true",
        "yes",
    }
    webhook_url = os.environ.get("TRANSCACHE_SLACK_WEBHOOK_URL")
    threshold_pct_str = os.environ.get("TRANSCACHE_SLACK_USAGE_THRESHOLD", "90")
    try:
        threshold_pct = float(threshold_pct_str)
    except ValueError:
        threshold_pct = 90.0

    over_threshold = {
        tier: pct for tier, pct in tier_usage.items() if pct >= threshold_pct
    }
    should_alert = alerts_enabled and bool(webhook_url) and bool(over_threshold)
    print(
        f"[transcache][Slack] enabled={alerts_enabled} tiers_over={len(over_threshold)} "
        f"threshold={threshold_pct:.1f}% has_webhook={'yes' if webhook_url else 'no'}",
        file=sys.stderr,
        flush=True,
    )

    if not should_alert:
        return False, None

    verify_ssl = os.environ.get("TRANSCACHE_SLACK_VERIFY_SSL", "true").lower() == "true"
    if verify_ssl:
        ssl_ctx = ssl.create_default_context(cafile=certifi.where())
    else:
        ssl_ctx = ssl._create_unverified_context()
        print(
            "[transcache][Slack] SSL verify=OFF (unverified)",
            file=sys.stderr,
            flush=True,
        )

    worst_tier, worst_pct = max(over_threshold.items(), key=lambda pair: pair[1])
    fields = [
        {"title": "Backend", "value": backend_name, "short": True},
        {
            "title": "Process RSS",
            "value": f"{process_rss_mb}MB" if process_rss_mb is not None else "n/a",
            "short": True,
        },
    ]
    fields.extend(
        {"title": f"Tier {tier}", "value": f"{pct:.1f}%", "short": True}
        for tier, pct in sorted(tier_usage.items())
    )
    payload = {
        "text": f":rotating_light: Storage quota pressure on {worst_tier} ({worst_pct:.1f}%)",
        "attachments": [{"color": "danger", "fields": fields}],
    }

    try:
        req = urllib.request.Request(
            webhook_url or "",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        print("[transcache][Slack] sending alert...", file=sys.stderr, flush=True)
        with urllib.request.urlopen(req, timeout=5, context=ssl_ctx) as resp:
            code = getattr(resp, "status", None) or getattr(resp, "code", None)
            print(
                f"[transcache][Slack] sent, status={code}",
                file=sys.stderr,
                flush=True,
            )
            try:
                return True, int(code) if code is not None else None
            except Exception:
                return True, None
    except Exception as slack_err:  # pragma: no cover
        print(
            f"[transcache][Slack] send failed: {slack_err}",
            file=sys.stderr,
            flush=True,
        )
        return True, None
