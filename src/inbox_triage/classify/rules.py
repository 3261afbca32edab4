"""Deterministic keyword/pattern classifier used when the oracle is unavailable.

Scoring: categories are checked in declaration order and the first category
with at least one matching pattern wins. Confidence grows with the number of
matching patterns in that category: ``min(0.6 + 0.15 * matches, 0.95)``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence

from inbox_triage.core.models import (
    Category,
    ClassificationMethod,
    ClassifiedRecord,
    MailRecord,
)

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.6
CONFIDENCE_STEP = 0.15
MAX_CONFIDENCE = 0.95
UNMATCHED_CONFIDENCE = 0.3

DEFAULT_PATTERNS: dict[Category, tuple[str, ...]] = {
    Category.OUT_OF_OFFICE: (
        r"out of office",
        r"away from",
        r"on vacation",
        r"auto[\s-]?reply",
        r"automatic reply",
        r"currently unavailable",
        r"will be back",
        r"away until",
        r"i am away",
    ),
    Category.MEETING_BOOKED: (
        r"meeting confirmed",
        r"calendar invite",
        r"accepted.*invite",
        r"booked",
        r"scheduled",
        r"see you on",
        r"meeting link",
        r"zoom link",
        r"confirmed.*meeting",
        r"looking forward to our",
    ),
    Category.NOT_INTERESTED: (
        r"not interested",
        r"no thank",
        r"unsubscribe",
        r"remove me",
        r"don'?t contact",
        r"not a fit",
        r"not the right time",
        r"pass on this",
        r"no longer interested",
    ),
    Category.SPAM: (
        r"click here now",
        r"limited time offer",
        r"act now",
        r"congratulations you won",
        r"verify your account",
        r"urgent action required",
        r"account suspended",
        r"winner",
        r"lottery",
        r"free money",
        r"cryptocurrency",
    ),
    Category.INTERESTED: (
        r"interested",
        r"tell me more",
        r"learn more",
        r"pricing",
        r"demo",
        r"trial",
        r"how does.*work",
        r"can you",
        r"would like to know",
        r"more information",
        r"discuss",
        r"schedule.*call",
        r"available.*talk",
        r"let'?s connect",
    ),
}


class RuleClassifier:
    """First-match regex classifier over subject, body and sender."""

    def __init__(self, patterns: Mapping[Category, Sequence[str]] | None = None) -> None:
        source = DEFAULT_PATTERNS if patterns is None else patterns
        self._patterns: list[tuple[Category, list[re.Pattern[str]]]] = [
            (category, [re.compile(p, re.IGNORECASE) for p in regexes])
            for category, regexes in source.items()
        ]

    @property
    def categories(self) -> list[Category]:
        """Categories in the order they are checked."""
        return [category for category, _ in self._patterns]

    def categorize_text(self, text: str) -> tuple[Category, float, int]:
        """Return (category, confidence, matching pattern count) for raw text."""
        lowered = text.lower()
        for category, regexes in self._patterns:
            matches = sum(1 for regex in regexes if regex.search(lowered))
            if matches:
                confidence = min(BASE_CONFIDENCE + matches * CONFIDENCE_STEP, MAX_CONFIDENCE)
                return category, round(confidence, 4), matches
        return Category.UNCATEGORIZED, UNMATCHED_CONFIDENCE, 0

    def classify(self, record: MailRecord) -> ClassifiedRecord:
        """Classify one record; never fails."""
        text = f"{record.subject} {record.body} {record.sender}"
        category, confidence, matches = self.categorize_text(text)
        reasoning = (
            f"Matched {matches} pattern(s) for {category.value}"
            if matches
            else "No rule matched"
        )
        logger.debug("UID %d -> %s (%s)", record.uid, category.value, reasoning)
        return ClassifiedRecord(
            record=record,
            category=category,
            method=ClassificationMethod.RULE_FALLBACK,
            confidence=confidence,
            reasoning=reasoning,
        )
