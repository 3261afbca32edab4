"""Notification channels for actionable mail: Slack incoming webhook and generic JSON webhook."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

import httpx

from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.models import ClassifiedRecord, NotificationResult

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200
USER_AGENT = "inbox-triage/0.1"


class NotificationChannel(ABC):
    """A destination that can be told about one classified record."""

    name: str = "channel"

    @abstractmethod
    def send(self, item: ClassifiedRecord) -> NotificationResult:
        """Deliver ``item``. Must report failures in the result, not raise."""

    def close(self) -> None:
        """Release any held resources."""


class _HttpChannel(NotificationChannel):
    """POSTs a JSON payload to a fixed URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout, headers={"User-Agent": USER_AGENT}
        )

    @abstractmethod
    def build_payload(self, item: ClassifiedRecord) -> dict[str, Any]:
        """JSON body for ``item``."""

    def send(self, item: ClassifiedRecord) -> NotificationResult:
        try:
            response = self._client.post(self._url, json=self.build_payload(item))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error = f"HTTP {e.response.status_code}"
            logger.error("%s notification for UID %d failed: %s", self.name, item.uid, error)
            return NotificationResult(channel=self.name, success=False, error=error)
        except httpx.HTTPError as e:
            logger.error("%s notification for UID %d failed: %s", self.name, item.uid, e)
            return NotificationResult(channel=self.name, success=False, error=str(e))

        logger.info("%s notification sent for UID %d", self.name, item.uid)
        return NotificationResult(channel=self.name, success=True)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def _preview(text: str) -> str:
    if len(text) > PREVIEW_CHARS:
        return text[:PREVIEW_CHARS] + "..."
    return text


class SlackChannel(_HttpChannel):
    """Slack incoming webhook with a block-kit lead summary."""

    name = "slack"

    def build_payload(self, item: ClassifiedRecord) -> dict[str, Any]:
        """Block-kit message; the preview block is omitted for header-only records."""
        record = item.record
        blocks: list[dict[str, Any]] = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": "New Interested Lead!", "emoji": True},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*From:*\n{record.sender or 'Unknown'}"},
                    {"type": "mrkdwn", "text": f"*Subject:*\n{record.subject or 'No Subject'}"},
                ],
            },
        ]
        if record.body.strip():
            blocks.append({
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Email Preview:*\n{_preview(record.body)}"},
            })
        blocks.extend([
            {
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": datetime.now(UTC).strftime("%Y-%m-%d %H:%M UTC")}
                ],
            },
            {"type": "divider"},
        ])
        return {"blocks": blocks}


class WebhookChannel(_HttpChannel):
    """Generic JSON webhook carrying the ``interested_email`` event."""

    name = "webhook"

    def build_payload(self, item: ClassifiedRecord) -> dict[str, Any]:
        record = item.record
        return {
            "event": "interested_email",
            "timestamp": datetime.now(UTC).isoformat(),
            "email": {
                "uid": record.uid,
                "from": record.sender,
                "subject": record.subject,
                "body": record.body,
                "category": item.category.value,
                "receivedAt": record.date.isoformat(),
            },
            "metadata": {
                "source": "inbox-triage",
                "priority": "high",
            },
        }


def channels_from_settings(settings: InboxTriageSettings) -> list[NotificationChannel]:
    """Configure one channel per webhook URL that is set."""
    channels: list[NotificationChannel] = []
    timeout = settings.notification_timeout_seconds
    if settings.slack_webhook_url:
        channels.append(SlackChannel(settings.slack_webhook_url, timeout=timeout))
    if settings.webhook_url:
        channels.append(WebhookChannel(settings.webhook_url, timeout=timeout))
    if not channels:
        logger.info("No notification channels configured")
    return channels
