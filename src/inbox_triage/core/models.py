"""Frozen dataclasses and enums for the Inbox Triage domain model."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Category(str, Enum):
    """Intent categories assigned to incoming mail."""

    INTERESTED = "Interested"
    MEETING_BOOKED = "Meeting Booked"
    NOT_INTERESTED = "Not Interested"
    SPAM = "Spam"
    OUT_OF_OFFICE = "Out of Office"
    UNCATEGORIZED = "Uncategorized"

    @classmethod
    def parse(cls, label: Any) -> Category:
        """Map a free-form label ("out of office", "OutOfOffice", ...) to a category.

        Unknown or empty labels map to UNCATEGORIZED.
        """
        if isinstance(label, cls):
            return label
        key = re.sub(r"[^a-z]", "", str(label or "").lower())
        for category in cls:
            if re.sub(r"[^a-z]", "", category.value.lower()) == key:
                return category
        return cls.UNCATEGORIZED


class ClassificationMethod(str, Enum):
    """Which path produced a category."""

    ORACLE = "oracle"
    RULE_FALLBACK = "rule_fallback"


@dataclass(frozen=True)
class MailRecord:
    """Header projection of one mailbox message.

    ``uid`` is the mailbox-assigned identifier and doubles as the document key
    in the index. ``body`` is never filled by the header fetcher; it carries
    text for ad-hoc categorization only.
    """

    uid: int
    sender: str
    to: str
    subject: str
    date: datetime
    folder: str
    account: str
    body: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.uid, bool) or not isinstance(self.uid, int) or self.uid <= 0:
            raise ValueError(f"uid must be a positive integer, got {self.uid!r}")
        if not isinstance(self.date, datetime):
            raise ValueError(f"date must be a datetime, got {type(self.date).__name__}")

    def to_document(self) -> dict[str, Any]:
        """Unclassified index document for this record."""
        return {
            "uid": self.uid,
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "date": self.date.isoformat(),
            "folder": self.folder,
            "account": self.account,
        }


@dataclass(frozen=True)
class ClassifiedRecord:
    """A MailRecord plus the category it was assigned."""

    record: MailRecord
    category: Category
    method: ClassificationMethod
    confidence: float
    reasoning: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def uid(self) -> int:
        return self.record.uid

    def classification_fields(self) -> dict[str, Any]:
        """Only the fields written by a partial (classification) update."""
        return {
            "ai_category": self.category.value,
            "ai_confidence": self.confidence,
            "ai_method": self.method.value,
            "ai_reasoning": self.reasoning,
        }

    def to_document(self) -> dict[str, Any]:
        """Full index document: header fields plus classification."""
        return {**self.record.to_document(), **self.classification_fields()}


@dataclass(frozen=True)
class SearchFilter:
    """Filter accepted by the document index search."""

    query: str | None = None
    folder: str | None = None
    account: str | None = None
    sender: str | None = None
    to: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    is_read: bool | None = None
    is_important: bool | None = None
    has_attachments: bool | None = None
    labels: tuple[str, ...] = field(default_factory=tuple)
    category: Category | None = None
    size: int = 20
    offset: int = 0


@dataclass(frozen=True)
class SearchResult:
    """One page of search hits."""

    hits: list[dict[str, Any]]
    total: int
    took_ms: int


@dataclass(frozen=True)
class BulkResult:
    """Outcome of a bulk write: succeeded uids and per-uid failure reasons."""

    succeeded: tuple[int, ...] = field(default_factory=tuple)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of delivering one record through one channel."""

    channel: str
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class DispatchReport:
    """All channel outcomes for one notified record."""

    uid: int
    results: tuple[NotificationResult, ...]

    @property
    def delivered(self) -> bool:
        return any(r.success for r in self.results)


@dataclass
class PipelineProgress:
    """Mutable progress counters for pipeline status reporting."""

    state: str = "disconnected"
    records_fetched: int = 0
    records_indexed: int = 0
    index_failures: int = 0
    records_classified: int = 0
    oracle_classified: int = 0
    rule_classified: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    last_seen_uid: int = 0
