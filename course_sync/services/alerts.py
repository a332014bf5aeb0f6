"""
Operator alerts for failures that need a human.

Alerts go to a Discord webhook (when configured) and to Sentry as a message.
Sending is best effort: a failed webhook is logged and reported as False,
never raised into the caller's failure path.
"""

from datetime import datetime, timezone
from typing import Optional, Protocol

import requests

from course_sync.core.config import settings
from course_sync.core.errors import capture_message
from course_sync.core.logging_config import get_logger

logger = get_logger(__name__)

RED = 0xEF4444
YELLOW = 0xF59E0B
GREEN = 0x10B981


class AlertNotifier(Protocol):
    def notify_critical_job_failure(
        self, job_class: str, job_id: str, error_kind: str, error_message: str
    ) -> bool: ...


def _send_alert(
    title: str,
    description: str,
    color: int,
    fields: list | None = None,
    webhook_url: str | None = None,
    username: str = "Course Sync Alerts",
) -> bool:
    """Send an embed to the Discord alerts webhook."""
    url = webhook_url or settings.DISCORD_ALERTS_WEBHOOK_URL
    if not url:
        return False

    embed = {
        "title": title,
        "description": description,
        "color": color,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "footer": {"text": "Course Sync"},
    }

    if fields:
        embed["fields"] = fields

    try:
        response = requests.post(url, json={"username": username, "embeds": [embed]}, timeout=5)
        return response.status_code in (200, 204)
    except requests.RequestException as e:
        logger.warning("discord_alert_failed", error=str(e))
        return False


class DiscordAlertNotifier:
    """Notification collaborator for the dead letter sink."""

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url

    def notify_critical_job_failure(
        self, job_class: str, job_id: str, error_kind: str, error_message: str
    ) -> bool:
        logger.error(
            "critical_job_failure_alert",
            job_class=job_class,
            job_id=job_id,
            error_kind=error_kind,
            message=error_message,
        )
        capture_message(
            f"Critical job {job_class} failed permanently",
            level="error",
            context={"job_id": job_id, "error_kind": error_kind, "error_message": error_message},
            tags={"job_class": job_class},
        )
        return _send_alert(
            title="🚨 Critical Job Failed",
            description=f"**{job_class}** exhausted its retries and was dead-lettered",
            color=RED,
            fields=[
                {"name": "Job ID", "value": f"`{job_id}`", "inline": True},
                {"name": "Error", "value": f"`{error_kind}`", "inline": True},
                {"name": "Message", "value": f"```{error_message[:900]}```", "inline": False},
            ],
            webhook_url=self.webhook_url,
        )

    def notify_circuit_state_change(self, name: str, old_state: str, new_state: str) -> bool:
        """Circuit breaker notification callback (see set_notification_callback)."""
        if new_state == "open":
            title, color = f"⚠️ Circuit Open: {name}", YELLOW
        elif new_state == "closed":
            title, color = f"✅ Circuit Closed: {name}", GREEN
        else:
            # First failures below threshold are too noisy to page on
            return False
        return _send_alert(
            title=title,
            description=f"Circuit **{name}** moved from `{old_state}` to `{new_state}`",
            color=color,
            webhook_url=self.webhook_url,
        )
