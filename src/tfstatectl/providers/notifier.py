"""Webhook notifier (Microsoft Teams MessageCard compatible)."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

import requests

from ..config import WEBHOOK_PLACEHOLDER

LOGGER = logging.getLogger(__name__)


class NotificationStatus(str, Enum):
    """Overall status announced to the channel."""

    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


_STATUS_STYLE = {
    NotificationStatus.SUCCESS: ("28a745", "✅"),
    NotificationStatus.FAILURE: ("dc3545", "❌"),
    NotificationStatus.WARNING: ("ffc107", "⚠️"),
}


class NotificationError(RuntimeError):
    """Raised when the webhook rejects or cannot receive a notification."""


@dataclass(slots=True, frozen=True)
class NotificationResult:
    """What happened when a notification was requested."""

    sent: bool
    skipped: bool = False
    status_code: int | None = None
    detail: str = ""


def build_payload(
    status: NotificationStatus,
    environment: str,
    message: str,
    metadata: Mapping[str, object] | None = None,
) -> dict[str, object]:
    """Return the webhook body for a run notification."""
    color, icon = _STATUS_STYLE[status]
    facts = [
        {"name": f"{key}:", "value": str(value)}
        for key, value in (metadata or {}).items()
        if value is not None
    ]
    return {
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "themeColor": color,
        "summary": f"Terraform Pipeline - {environment}",
        "sections": [
            {
                "activityTitle": f"{icon} Terraform Pipeline - {environment}",
                "activitySubtitle": f"Status: {status.value}",
                "facts": facts,
                "text": message,
            }
        ],
        "status": status.value,
        "environment": environment,
        "message": message,
        "metadata": {str(key): value for key, value in (metadata or {}).items()},
    }


@dataclass(slots=True)
class WebhookNotifier:
    """POST run notifications to a webhook URL."""

    webhook_url: str | None
    timeout: float = 10.0

    @property
    def configured(self) -> bool:
        """Return ``True`` when a real (non-placeholder) URL is set."""
        url = (self.webhook_url or "").strip()
        return bool(url) and url != WEBHOOK_PLACEHOLDER

    def notify(
        self,
        status: NotificationStatus,
        environment: str,
        message: str,
        metadata: Mapping[str, object] | None = None,
    ) -> NotificationResult:
        """Send a notification; a missing URL is a silent no-op."""
        if not self.configured:
            LOGGER.debug("notification skipped; no webhook configured")
            return NotificationResult(sent=False, skipped=True, detail="webhook not configured")

        payload = build_payload(status, environment, message, metadata)
        try:
            response = requests.post(
                str(self.webhook_url),
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise NotificationError(f"Webhook request failed: {exc}") from exc
        if response.status_code >= 400:
            raise NotificationError(
                f"Webhook rejected notification: HTTP {response.status_code} - {response.text}"
            )
        return NotificationResult(sent=True, status_code=response.status_code)


__all__ = [
    "NotificationError",
    "NotificationResult",
    "NotificationStatus",
    "WebhookNotifier",
    "build_payload",
]
