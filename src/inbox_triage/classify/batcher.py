"""Batch classification: rate-limited oracle attempts with rule-based fallback.

Per batch: Pending -> (OracleAttempt <-> RetryWait)* -> OracleSuccess | FallbackApplied.
Every input record yields exactly one ClassifiedRecord, in input order.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from inbox_triage.classify.rate_limiter import SlidingWindowLimiter
from inbox_triage.classify.rules import RuleClassifier
from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.exceptions import NonRetryableOracleError, OracleError, RateLimitError
from inbox_triage.core.models import (
    Category,
    ClassificationMethod,
    ClassifiedRecord,
    MailRecord,
)

logger = logging.getLogger(__name__)

ORACLE_CONFIDENCE = 0.9


class ClassificationOracle(Protocol):
    def classify(self, batch: Sequence[MailRecord]) -> list[Category]: ...


class ClassificationBatcher:
    """Classifies fixed-size batches, falling back to rules when the oracle fails."""

    def __init__(
        self,
        oracle: ClassificationOracle | None,
        rules: RuleClassifier | None = None,
        limiter: SlidingWindowLimiter | None = None,
        *,
        batch_size: int = 5,
        max_attempts: int = 2,
        rate_limit_backoff_seconds: float = 3.0,
        error_backoff_seconds: float = 2.0,
        inter_batch_delay_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self._oracle = oracle
        self._rules = rules or RuleClassifier()
        self._limiter = limiter or SlidingWindowLimiter()
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._rate_limit_backoff = rate_limit_backoff_seconds
        self._error_backoff = error_backoff_seconds
        self._inter_batch_delay = inter_batch_delay_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: InboxTriageSettings,
        oracle: ClassificationOracle | None,
    ) -> ClassificationBatcher:
        limiter = SlidingWindowLimiter(
            settings.oracle_window_calls, settings.oracle_window_seconds
        )
        return cls(
            oracle,
            limiter=limiter,
            batch_size=settings.batch_size,
            max_attempts=settings.oracle_max_attempts,
            rate_limit_backoff_seconds=settings.rate_limit_backoff_seconds,
            error_backoff_seconds=settings.oracle_error_backoff_seconds,
            inter_batch_delay_seconds=settings.inter_batch_delay_seconds,
        )

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def rules(self) -> RuleClassifier:
        return self._rules

    def classify_batch(self, batch: Sequence[MailRecord]) -> list[ClassifiedRecord]:
        """Classify one batch of 1..batch_size records.

        Rate limits wait a fixed backoff and retry; transient errors and
        malformed responses retry after a shorter backoff; non-retryable errors
        abandon the oracle at once. All attempts share ``max_attempts``.
        """
        records = list(batch)
        if not records:
            return []
        if len(records) > self._batch_size:
            raise ValueError(
                f"Batch of {len(records)} exceeds batch size {self._batch_size}"
            )

        if self._oracle is not None:
            categories = self._try_oracle(self._oracle, records)
            if categories is not None:
                return [
                    ClassifiedRecord(
                        record=record,
                        category=category,
                        method=ClassificationMethod.ORACLE,
                        confidence=ORACLE_CONFIDENCE,
                        reasoning="AI categorization",
                    )
                    for record, category in zip(records, categories, strict=True)
                ]
            logger.info("Using rule-based categorization for batch of %d", len(records))

        return [self._rules.classify(record) for record in records]

    def _try_oracle(
        self, oracle: ClassificationOracle, records: list[MailRecord]
    ) -> list[Category] | None:
        for attempt in range(1, self._max_attempts + 1):
            self._limiter.acquire()
            try:
                categories = oracle.classify(records)
            except RateLimitError as e:
                logger.warning(
                    "Rate limit hit (attempt %d/%d): %s", attempt, self._max_attempts, e
                )
                backoff = self._rate_limit_backoff
            except NonRetryableOracleError as e:
                logger.error("Oracle unusable, switching to rule-based fallback: %s", e)
                return None
            except OracleError as e:
                logger.warning(
                    "Oracle error (attempt %d/%d): %s", attempt, self._max_attempts, e
                )
                backoff = self._error_backoff
            else:
                if len(categories) != len(records):
                    logger.error(
                        "Oracle returned %d categories for %d records, falling back",
                        len(categories), len(records),
                    )
                    return None
                return categories

            if attempt < self._max_attempts and backoff > 0:
                self._sleep(backoff)

        logger.warning("Oracle failed after %d attempts", self._max_attempts)
        return None

    def classify_all(self, records: Sequence[MailRecord]) -> list[ClassifiedRecord]:
        """Split ``records`` into batches and classify them in order."""
        records = list(records)
        total_batches = (len(records) + self._batch_size - 1) // self._batch_size
        logger.info("Starting categorization for %d emails", len(records))

        classified: list[ClassifiedRecord] = []
        for number, start in enumerate(range(0, len(records), self._batch_size), start=1):
            if number > 1 and self._inter_batch_delay > 0:
                self._sleep(self._inter_batch_delay)
            logger.info("Processing batch %d/%d", number, total_batches)
            classified.extend(self.classify_batch(records[start : start + self._batch_size]))

        stats = summarize(classified)
        logger.info(
            "Categorization complete: methods=%s categories=%s",
            stats["by_method"], stats["by_category"],
        )
        return classified


def summarize(classified: Sequence[ClassifiedRecord]) -> dict[str, Any]:
    """Category and method distribution of a set of classified records."""
    by_category = Counter(c.category.value for c in classified)
    by_method = Counter(c.method.value for c in classified)
    confidence = (
        sum(c.confidence for c in classified) / len(classified) if classified else 0.0
    )
    return {
        "total": len(classified),
        "by_category": {c.value: by_category.get(c.value, 0) for c in Category},
        "by_method": {m.value: by_method.get(m.value, 0) for m in ClassificationMethod},
        "average_confidence": round(confidence, 4),
    }
