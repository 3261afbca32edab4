"""Shared fixtures for Inbox Triage tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, date, datetime
from email.utils import format_datetime
from pathlib import Path
from typing import Any

import pytest

from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.exceptions import SessionEndedError
from inbox_triage.core.models import Category, MailRecord
from inbox_triage.storage.index import MessageIndex

FIXED_NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=UTC)


def build_raw_headers(
    subject: str | None = "Hello",
    sender: str = "alice@example.com",
    to: str = "me@example.com",
    sent: datetime | str | None = datetime(2024, 6, 10, 9, 30, tzinfo=UTC),
) -> bytes:
    """RFC 2822 header block as returned by a header FETCH."""
    lines = [f"From: {sender}", f"To: {to}"]
    if subject is not None:
        lines.append(f"Subject: {subject}")
    if isinstance(sent, datetime):
        lines.append(f"Date: {format_datetime(sent)}")
    elif sent is not None:
        lines.append(f"Date: {sent}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode()


class FakeSession:
    """In-memory stand-in for MailSession with IMAP-like SEARCH semantics.

    ``events`` scripts ``wait_for_mail``: ints are returned, exceptions are
    raised, callables are invoked with the session and their result returned.
    When the script runs out the session ends.
    """

    def __init__(
        self,
        messages: dict[int, tuple[datetime, bytes]] | None = None,
        *,
        account: str = "me@example.com",
        events: Sequence[Any] = (),
    ) -> None:
        self.messages = dict(messages or {})
        self._account = account
        self._folder: str | None = None
        self.events = list(events)
        self.searches: list[list[Any]] = []
        self.fetched: list[list[int]] = []
        self.opened: list[tuple[str, bool]] = []
        self.closed = False
        self.fail_search: Exception | None = None

    @property
    def account(self) -> str:
        return self._account

    @property
    def folder(self) -> str:
        assert self._folder is not None
        return self._folder

    def add(self, uid: int, raw: bytes, sent: datetime = FIXED_NOW) -> None:
        self.messages[uid] = (sent, raw)

    def open_folder(self, name: str, readonly: bool = True) -> None:
        self.opened.append((name, readonly))
        self._folder = name

    def search(self, criteria: Sequence[Any]) -> list[int]:
        self.searches.append(list(criteria))
        if self.fail_search is not None:
            raise self.fail_search
        if criteria[0] == "UID":
            floor = int(str(criteria[1]).split(":")[0])
            uids = [uid for uid in self.messages if uid >= floor]
            # "n:*" always includes the highest UID.
            if self.messages and not uids:
                uids = [max(self.messages)]
            return uids
        if criteria[0] == "SINCE":
            since: date = criteria[1]
            return [uid for uid, (sent, _) in self.messages.items() if sent.date() >= since]
        raise AssertionError(f"Unexpected criteria {criteria!r}")

    def fetch_headers(self, uids: Sequence[int]) -> dict[int, bytes]:
        self.fetched.append(list(uids))
        return {uid: self.messages[uid][1] for uid in uids if uid in self.messages}

    def wait_for_mail(self, timeout: float) -> int:
        if not self.events:
            raise SessionEndedError("script exhausted")
        event = self.events.pop(0)
        if isinstance(event, BaseException):
            raise event
        if callable(event):
            return event(self)
        return event

    def close(self) -> None:
        self.closed = True


class FakeOracle:
    """Scripted classification oracle.

    Each entry in ``script`` is an exception to raise, a list of categories to
    return, or None to answer ``default`` for every record.
    """

    def __init__(
        self,
        script: Sequence[Any] = (),
        default: Category = Category.INTERESTED,
    ) -> None:
        self.script = list(script)
        self.default = default
        self.calls: list[list[int]] = []

    def classify(self, batch: Sequence[MailRecord]) -> list[Category]:
        self.calls.append([r.uid for r in batch])
        step = self.script.pop(0) if self.script else None
        if isinstance(step, BaseException):
            raise step
        if step is None:
            return [self.default] * len(batch)
        return list(step)


@pytest.fixture
def record_factory() -> Callable[..., MailRecord]:
    """Builds MailRecords with sensible defaults."""

    def make(uid: int, **overrides: Any) -> MailRecord:
        values: dict[str, Any] = {
            "uid": uid,
            "sender": f"sender{uid}@example.com",
            "to": "me@example.com",
            "subject": f"Message {uid}",
            "date": datetime(2024, 6, 1, tzinfo=UTC).replace(minute=uid % 60),
            "folder": "INBOX",
            "account": "me@example.com",
        }
        values.update(overrides)
        return MailRecord(**values)

    return make


@pytest.fixture
def sample_record(record_factory: Callable[..., MailRecord]) -> MailRecord:
    """A plain unclassified record."""
    return record_factory(
        42,
        sender="Jane Doe <jane@acme.io>",
        subject="Re: Demo Request",
        body="I'm interested in your product. Can we schedule a call?",
    )


@pytest.fixture
def fake_session_cls() -> type[FakeSession]:
    return FakeSession


@pytest.fixture
def fake_oracle_cls() -> type[FakeOracle]:
    return FakeOracle


@pytest.fixture
def raw_headers() -> Callable[..., bytes]:
    return build_raw_headers


@pytest.fixture
def tmp_settings(tmp_path: Path) -> InboxTriageSettings:
    """Settings pointing to temporary paths, with all waits set to zero."""
    return InboxTriageSettings(
        _env_file=None,
        credentials_path=tmp_path / "creds" / "client_secret.json",
        token_path=tmp_path / "creds" / "token.json",
        database_path=tmp_path / "data" / "test.db",
        account="me@example.com",
        imap_password="secret",
        batch_size=5,
        oracle_api_key=None,
        rate_limit_backoff_seconds=0.0,
        oracle_error_backoff_seconds=0.0,
        inter_batch_delay_seconds=0.0,
        drain_retry_delay_seconds=0.0,
        reconnect_delay_seconds=0.0,
        notification_delay_seconds=0.0,
    )


@pytest.fixture
def index(tmp_path: Path) -> Iterator[MessageIndex]:
    """Connected MessageIndex on a temporary database."""
    idx = MessageIndex(tmp_path / "index.db")
    idx.connect()
    yield idx
    idx.close()
