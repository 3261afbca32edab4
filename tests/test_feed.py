"""Tests for RecordFeed subscribe/unsubscribe."""

from __future__ import annotations

from typing import Any

from inbox_triage.pipeline.feed import RecordFeed


class TestRecordFeed:
    """Tests for RecordFeed.subscribe() and publish()."""

    def test_publish_reaches_subscribers(self) -> None:
        feed = RecordFeed()
        a: list[dict[str, Any]] = []
        b: list[dict[str, Any]] = []
        feed.subscribe(a.append)
        feed.subscribe(b.append)
        feed.publish({"uid": 1})
        assert a == b == [{"uid": 1}]

    def test_unsubscribe(self) -> None:
        feed = RecordFeed()
        received: list[dict[str, Any]] = []
        unsubscribe = feed.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        feed.publish({"uid": 1})
        assert received == []
        assert feed.subscriber_count == 0

    def test_failing_subscriber_isolated(self) -> None:
        feed = RecordFeed()
        received: list[dict[str, Any]] = []

        def broken(_doc: dict[str, Any]) -> None:
            raise RuntimeError("socket closed")

        feed.subscribe(broken)
        feed.subscribe(received.append)
        feed.publish({"uid": 7})
        assert received == [{"uid": 7}]

    def test_same_callback_twice_is_two_subscriptions(self) -> None:
        feed = RecordFeed()
        received: list[dict[str, Any]] = []
        first = feed.subscribe(received.append)
        feed.subscribe(received.append)
        first()
        feed.publish({"uid": 2})
        assert received == [{"uid": 2}]
