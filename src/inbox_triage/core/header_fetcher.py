"""Header fetcher: backfill (date window) and incremental (UID floor) selection."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from inbox_triage.core.exceptions import ParseError
from inbox_triage.core.mail_session import MailSession
from inbox_triage.core.models import MailRecord
from inbox_triage.core.parser import HeaderParser

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HeaderFetcher:
    """Selects messages in the open folder and returns their header records.

    Each call is a fresh query. A SEARCH or FETCH failure raises ``FetchError``
    from the session and nothing is returned; a single unparseable message is
    skipped with a warning.
    """

    def __init__(
        self,
        *,
        default_since_days: int = 30,
        chunk_size: int = 500,
        parser: HeaderParser | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._default_since_days = default_since_days
        self._chunk_size = chunk_size
        self._parser = parser or HeaderParser()
        self._clock = clock

    def fetch(
        self,
        session: MailSession,
        since_days: int | None = None,
        uid_floor: int | None = None,
    ) -> list[MailRecord]:
        """Fetch header records.

        Args:
            session: Connected session with a folder open.
            since_days: Backfill mode: messages dated within the last N days.
            uid_floor: Incremental mode: messages with UID strictly greater than this.

        Returns:
            Records sorted by ascending UID.
        """
        if since_days is not None and uid_floor is not None:
            raise ValueError("since_days and uid_floor are mutually exclusive")

        if uid_floor is not None:
            criteria: list[object] = ["UID", f"{uid_floor + 1}:*"]
            # "n:*" always matches the newest message, even when its UID is below n.
            uids = [uid for uid in session.search(criteria) if uid > uid_floor]
            logger.debug("Incremental search above UID %d: %d new", uid_floor, len(uids))
        else:
            days = self._default_since_days if since_days is None else since_days
            since = (self._clock() - timedelta(days=days)).date()
            uids = session.search(["SINCE", since])
            logger.info("Backfill search since %s: %d messages", since, len(uids))

        if not uids:
            return []

        uids = sorted(set(uids))
        raw: dict[int, bytes] = {}
        for start in range(0, len(uids), self._chunk_size):
            chunk = uids[start : start + self._chunk_size]
            raw.update(session.fetch_headers(chunk))

        fetched_at = self._clock()
        folder, account = session.folder, session.account

        records: list[MailRecord] = []
        for uid in uids:
            blob = raw.get(uid)
            if blob is None:
                logger.warning("UID %d matched the search but returned no headers", uid)
                continue
            try:
                records.append(
                    self._parser.parse(
                        uid, blob, folder=folder, account=account, fetched_at=fetched_at
                    )
                )
            except ParseError as e:
                logger.warning("Skipping message: %s", e)

        logger.debug("Fetched %d header records", len(records))
        return records
