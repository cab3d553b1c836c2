"""Tests for the webhook notifier."""
from __future__ import annotations

from typing import Any

import pytest
import requests

from tfstatectl.config import WEBHOOK_PLACEHOLDER
from tfstatectl.providers import notifier as notifier_module
from tfstatectl.providers.notifier import (
    NotificationError,
    NotificationStatus,
    WebhookNotifier,
    build_payload,
)


class DummyResponse:
    """Minimal ``requests.Response`` stand-in."""

    def __init__(self, status_code: int = 200, text: str = "1") -> None:
        """Store the status code and body."""
        self.status_code = status_code
        self.text = text


def test_build_payload_embeds_status_fields() -> None:
    """The MessageCard carries the status, environment, message and metadata."""
    payload = build_payload(
        NotificationStatus.FAILURE,
        "production",
        "import-bulk finished with 1 failed import(s) out of 2.",
        {"Operation": "import-bulk", "Snapshot": None},
    )

    assert payload["@type"] == "MessageCard"
    assert payload["themeColor"] == "dc3545"
    assert payload["summary"] == "Terraform Pipeline - production"
    assert payload["status"] == "failure"
    assert payload["environment"] == "production"
    assert payload["metadata"] == {"Operation": "import-bulk", "Snapshot": None}
    facts = payload["sections"][0]["facts"]  # type: ignore[index]
    assert facts == [{"name": "Operation:", "value": "import-bulk"}]


@pytest.mark.parametrize("url", [None, "", "   ", WEBHOOK_PLACEHOLDER])
def test_unconfigured_webhook_is_a_no_op(monkeypatch: pytest.MonkeyPatch, url: str | None) -> None:
    """Absent or placeholder URLs skip the POST entirely."""

    def fail_post(*args: object, **kwargs: object) -> None:
        raise AssertionError("requests.post should not be called")

    monkeypatch.setattr(notifier_module.requests, "post", fail_post)

    result = WebhookNotifier(url).notify(NotificationStatus.SUCCESS, "staging", "ok")

    assert result.sent is False
    assert result.skipped is True


def test_notify_posts_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    """Configured webhooks receive one JSON POST."""
    calls: list[dict[str, Any]] = []

    def fake_post(url: str, **kwargs: Any) -> DummyResponse:
        calls.append({"url": url, **kwargs})
        return DummyResponse(200)

    monkeypatch.setattr(notifier_module.requests, "post", fake_post)

    result = WebhookNotifier("https://example.invalid/hook", timeout=3).notify(
        NotificationStatus.SUCCESS,
        "staging",
        "import-individual completed successfully.",
    )

    assert result.sent is True
    assert result.status_code == 200
    assert len(calls) == 1
    assert calls[0]["url"] == "https://example.invalid/hook"
    assert calls[0]["timeout"] == 3
    assert calls[0]["json"]["status"] == "success"


def test_notify_raises_on_http_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """HTTP errors are reported as NotificationError."""
    monkeypatch.setattr(
        notifier_module.requests,
        "post",
        lambda url, **kwargs: DummyResponse(400, "Bad payload"),
    )

    with pytest.raises(NotificationError, match="HTTP 400"):
        WebhookNotifier("https://example.invalid/hook").notify(
            NotificationStatus.FAILURE, "staging", "failed"
        )


def test_notify_raises_on_connection_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """Transport failures are reported as NotificationError."""

    def fail_post(*args: object, **kwargs: object) -> None:
        raise requests.exceptions.ConnectionError("unreachable")

    monkeypatch.setattr(notifier_module.requests, "post", fail_post)

    with pytest.raises(NotificationError, match="unreachable"):
        WebhookNotifier("https://example.invalid/hook").notify(
            NotificationStatus.WARNING, "production", "drift"
        )
