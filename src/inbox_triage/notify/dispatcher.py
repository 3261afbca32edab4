"""Fan-out of actionable classified records to every notification channel."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor

from inbox_triage.core.models import (
    Category,
    ClassifiedRecord,
    DispatchReport,
    NotificationResult,
)
from inbox_triage.notify.channels import NotificationChannel

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Notifies all channels about records in the actionable category.

    Channels are called concurrently per record and isolated from one another.
    ``dispatch`` never raises; every outcome is returned as a result.
    """

    def __init__(
        self,
        channels: Sequence[NotificationChannel],
        *,
        delay_seconds: float = 0.5,
        actionable: Category = Category.INTERESTED,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._channels = list(channels)
        self._delay = delay_seconds
        self._actionable = actionable
        self._sleep = sleep

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    def dispatch(self, batch: Sequence[ClassifiedRecord]) -> list[DispatchReport]:
        """Notify about every actionable record in ``batch``, one record at a time."""
        actionable = [c for c in batch if c.category is self._actionable]
        if not actionable or not self._channels:
            if actionable:
                logger.debug("%d actionable records but no channels", len(actionable))
            return []

        logger.info("Notifying %d %s record(s)", len(actionable), self._actionable.value)
        reports: list[DispatchReport] = []
        with ThreadPoolExecutor(
            max_workers=len(self._channels), thread_name_prefix="notify"
        ) as pool:
            for i, item in enumerate(actionable):
                if i and self._delay > 0:
                    self._sleep(self._delay)
                futures = [pool.submit(self._send_one, ch, item) for ch in self._channels]
                results = tuple(f.result() for f in futures)
                reports.append(DispatchReport(uid=item.uid, results=results))

        failed = sum(1 for r in reports for res in r.results if not res.success)
        logger.info(
            "Notifications processed: %d record(s), %d channel failure(s)",
            len(reports), failed,
        )
        return reports

    @staticmethod
    def _send_one(channel: NotificationChannel, item: ClassifiedRecord) -> NotificationResult:
        try:
            return channel.send(item)
        except Exception as e:
            logger.exception("Channel %s raised for UID %d", channel.name, item.uid)
            return NotificationResult(channel=channel.name, success=False, error=str(e))

    def close(self) -> None:
        for channel in self._channels:
            channel.close()
