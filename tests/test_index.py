"""Tests for the SQLite MessageIndex."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from inbox_triage.core.exceptions import IndexingError
from inbox_triage.core.models import (
    Category,
    ClassificationMethod,
    ClassifiedRecord,
    MailRecord,
    SearchFilter,
)
from inbox_triage.storage.index import MessageIndex


def _classify(
    record: MailRecord,
    category: Category = Category.INTERESTED,
    method: ClassificationMethod = ClassificationMethod.ORACLE,
) -> ClassifiedRecord:
    return ClassifiedRecord(
        record=record, category=category, method=method, confidence=0.9, reasoning="test"
    )


class TestConnection:
    """Tests for MessageIndex connection lifecycle and schema."""

    def test_context_manager(self, tmp_path: Path) -> None:
        with MessageIndex(tmp_path / "sub" / "idx.db") as idx:
            assert idx.count() == 0
        assert (tmp_path / "sub" / "idx.db").exists()

    def test_not_connected(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError, match="not connected"):
            MessageIndex(tmp_path / "idx.db").count()

    def test_ensure_schema_idempotent(self, index: MessageIndex) -> None:
        index.ensure_schema()
        index.ensure_schema()
        assert index.count() == 0


class TestUpsert:
    """Tests for MessageIndex.upsert()."""

    def test_insert_unclassified(self, index: MessageIndex, sample_record: MailRecord) -> None:
        index.upsert(sample_record)
        doc = index.get(42)
        assert doc is not None
        assert doc["subject"] == "Re: Demo Request"
        assert doc["from"] == "Jane Doe <jane@acme.io>"
        assert doc["ai_category"] is None
        assert doc["labels"] == []

    def test_same_uid_updates_single_document(
        self, index: MessageIndex, sample_record: MailRecord
    ) -> None:
        index.upsert(sample_record)
        index.upsert(_classify(sample_record, Category.SPAM))
        assert index.count() == 1
        assert index.get(42)["ai_category"] == "Spam"

    def test_reindex_unclassified_keeps_category(
        self, index: MessageIndex, sample_record: MailRecord
    ) -> None:
        index.upsert(_classify(sample_record))
        index.upsert(sample_record)
        assert index.get(42)["ai_category"] == "Interested"

    def test_write_failure_raises(self, index: MessageIndex, sample_record: MailRecord) -> None:
        index.conn.execute("DROP TABLE documents")
        with pytest.raises(IndexingError):
            index.upsert(sample_record)


class TestBulkUpsert:
    """Tests for MessageIndex.bulk_upsert() full and partial writes."""

    def test_full_overwrite(
        self, index: MessageIndex, record_factory: Callable[..., MailRecord]
    ) -> None:
        items = [_classify(record_factory(uid)) for uid in (1, 2, 3)]
        result = index.bulk_upsert(items, partial=False)
        assert result.ok
        assert result.succeeded == (1, 2, 3)
        assert index.count() == 3

    def test_partial_updates_classification_only(
        self, index: MessageIndex, record_factory: Callable[..., MailRecord]
    ) -> None:
        original = record_factory(1, subject="Original subject")
        index.upsert(original)
        changed = record_factory(1, subject="Different subject")
        result = index.bulk_upsert([_classify(changed, Category.SPAM)], partial=True)
        assert result.ok
        doc = index.get(1)
        assert doc["subject"] == "Original subject"
        assert doc["ai_category"] == "Spam"
        assert doc["ai_method"] == "oracle"

    def test_partial_missing_document_reported(
        self, index: MessageIndex, record_factory: Callable[..., MailRecord]
    ) -> None:
        index.upsert(record_factory(1))
        result = index.bulk_upsert(
            [_classify(record_factory(1)), _classify(record_factory(2))], partial=True
        )
        assert result.succeeded == (1,)
        assert result.failed == {2: "document not found"}
        assert index.count() == 1

    def test_partial_requires_classified(
        self, index: MessageIndex, record_factory: Callable[..., MailRecord]
    ) -> None:
        index.upsert(record_factory(1))
        result = index.bulk_upsert([record_factory(1)], partial=True)
        assert 1 in result.failed

    def test_empty(self, index: MessageIndex) -> None:
        assert index.bulk_upsert([]).ok


@pytest.fixture
def populated(index: MessageIndex, record_factory: Callable[..., MailRecord]) -> MessageIndex:
    index.bulk_upsert([
        _classify(record_factory(
            1, subject="Pricing question", sender="ann@acme.io",
            date=datetime(2024, 1, 10, tzinfo=UTC),
        ), Category.INTERESTED),
        _classify(record_factory(
            2, subject="Win a prize", sender="spam@bad.biz", folder="Spam",
            date=datetime(2024, 2, 10, tzinfo=UTC),
        ), Category.SPAM),
        record_factory(
            3, subject="Pricing 100% off", sender="bob@acme.io", account="other@example.com",
            date=datetime(2024, 3, 10, tzinfo=UTC),
        ),
    ])
    index.conn.execute(
        "UPDATE documents SET is_read = 1, labels = ? WHERE uid = 1", (json.dumps(["work"]),)
    )
    index.conn.commit()
    return index


class TestSearch:
    """Tests for MessageIndex.search() filters and ordering."""

    def test_match_all_sorted_by_date_desc(self, populated: MessageIndex) -> None:
        result = populated.search(SearchFilter())
        assert result.total == 3
        assert [h["uid"] for h in result.hits] == [3, 2, 1]
        assert result.took_ms >= 0

    def test_free_text_all_terms(self, populated: MessageIndex) -> None:
        assert [h["uid"] for h in populated.search(SearchFilter(query="pricing")).hits] == [3, 1]
        assert [h["uid"] for h in populated.search(SearchFilter(query="pricing ann")).hits] == [1]

    def test_like_wildcards_escaped(self, populated: MessageIndex) -> None:
        assert [h["uid"] for h in populated.search(SearchFilter(query="100%")).hits] == [3]

    def test_exact_filters(self, populated: MessageIndex) -> None:
        assert populated.search(SearchFilter(folder="Spam")).total == 1
        assert populated.search(SearchFilter(account="other@example.com")).total == 1
        assert populated.search(SearchFilter(category=Category.INTERESTED)).total == 1

    def test_sender_substring(self, populated: MessageIndex) -> None:
        assert populated.search(SearchFilter(sender="acme")).total == 2

    def test_date_range_inclusive(self, populated: MessageIndex) -> None:
        result = populated.search(SearchFilter(
            date_from=datetime(2024, 1, 10, tzinfo=UTC),
            date_to=datetime(2024, 2, 10, tzinfo=UTC),
        ))
        assert [h["uid"] for h in result.hits] == [2, 1]

    def test_flags_and_labels(self, populated: MessageIndex) -> None:
        assert [h["uid"] for h in populated.search(SearchFilter(is_read=True)).hits] == [1]
        assert populated.search(SearchFilter(is_read=False)).total == 2
        assert populated.search(SearchFilter(labels=("work", "home"))).total == 1
        assert populated.search(SearchFilter(labels=("home",))).total == 0

    def test_pagination(self, populated: MessageIndex) -> None:
        result = populated.search(SearchFilter(size=2, offset=2))
        assert result.total == 3
        assert [h["uid"] for h in result.hits] == [1]


class TestAggregations:
    """Tests for folders(), accounts(), stats() and category_stats()."""

    def test_folders_and_accounts(self, populated: MessageIndex) -> None:
        assert populated.folders() == ["INBOX", "Spam"]
        assert populated.accounts() == ["me@example.com", "other@example.com"]

    def test_stats(self, populated: MessageIndex) -> None:
        stats = populated.stats()
        assert stats["total"] == 3
        assert stats["unread"] == 2
        assert stats["by_folder"] == {"INBOX": 2, "Spam": 1}

    def test_category_stats(self, populated: MessageIndex) -> None:
        stats = populated.category_stats()
        assert stats["by_category"] == {"Interested": 1, "Spam": 1}
        assert stats["by_method"] == {"oracle": 2}
        assert stats["unclassified"] == 1

    def test_empty_stats(self, index: MessageIndex) -> None:
        stats = index.stats()
        assert stats["total"] == 0
        assert stats["unread"] == 0
        assert stats["by_folder"] == {}
