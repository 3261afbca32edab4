"""Tests for the rule-based fallback classifier."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from inbox_triage.classify.rules import RuleClassifier
from inbox_triage.core.models import Category, ClassificationMethod, MailRecord


@pytest.fixture
def rules() -> RuleClassifier:
    return RuleClassifier()


class TestRuleClassifier:
    """Tests for RuleClassifier.classify()."""

    def test_demo_request_is_interested(
        self, rules: RuleClassifier, sample_record: MailRecord
    ) -> None:
        result = rules.classify(sample_record)
        assert result.category is Category.INTERESTED
        assert result.confidence >= 0.6
        assert result.method is ClassificationMethod.RULE_FALLBACK

    def test_away_until_monday_is_out_of_office(
        self, rules: RuleClassifier, record_factory: Callable[..., MailRecord]
    ) -> None:
        record = record_factory(1, subject="Re: Proposal", body="I am away until Monday")
        assert rules.classify(record).category is Category.OUT_OF_OFFICE

    def test_confidence_grows_with_matches(self, rules: RuleClassifier) -> None:
        _, one, n1 = rules.categorize_text("this is spam about the lottery")
        _, two, n2 = rules.categorize_text("lottery winner free money")
        assert (n1, n2) == (1, 3)
        assert one == pytest.approx(0.75)
        assert two == pytest.approx(0.95)

    def test_confidence_capped(self, rules: RuleClassifier) -> None:
        _, confidence, matches = rules.categorize_text(
            "interested, tell me more about pricing, demo and trial"
        )
        assert matches >= 5
        assert confidence == 0.95

    def test_first_category_in_order_wins(self, rules: RuleClassifier) -> None:
        # Matches both Out of Office and Interested; OOO is checked first.
        category, _, _ = rules.categorize_text("out of office, but interested in a demo")
        assert category is Category.OUT_OF_OFFICE

    def test_no_match_is_uncategorized(
        self, rules: RuleClassifier, record_factory: Callable[..., MailRecord]
    ) -> None:
        result = rules.classify(record_factory(3, subject="Lunch?", sender="bob@example.com"))
        assert result.category is Category.UNCATEGORIZED
        assert result.confidence == 0.3
        assert result.reasoning == "No rule matched"

    def test_matching_is_case_insensitive(self, rules: RuleClassifier) -> None:
        assert rules.categorize_text("NOT INTERESTED, thanks")[0] is Category.NOT_INTERESTED

    def test_sender_is_considered(
        self, rules: RuleClassifier, record_factory: Callable[..., MailRecord]
    ) -> None:
        record = record_factory(4, subject="Hi", sender="Automatic Reply <noreply@x.com>")
        assert rules.classify(record).category is Category.OUT_OF_OFFICE

    def test_deterministic(self, rules: RuleClassifier, sample_record: MailRecord) -> None:
        assert rules.classify(sample_record) == rules.classify(sample_record)

    def test_custom_patterns(self) -> None:
        custom = RuleClassifier({Category.SPAM: [r"buy now"]})
        assert custom.categories == [Category.SPAM]
        assert custom.categorize_text("Buy now!")[0] is Category.SPAM
        assert custom.categorize_text("hello")[0] is Category.UNCATEGORIZED

    def test_category_order(self, rules: RuleClassifier) -> None:
        assert rules.categories == [
            Category.OUT_OF_OFFICE,
            Category.MEETING_BOOKED,
            Category.NOT_INTERESTED,
            Category.SPAM,
            Category.INTERESTED,
        ]
