"""Raw header parsing: RFC 2822 header block -> MailRecord."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from email.header import decode_header, make_header
from email.parser import BytesHeaderParser
from email.policy import compat32
from email.utils import parsedate_to_datetime

from inbox_triage.core.exceptions import ParseError
from inbox_triage.core.models import MailRecord

logger = logging.getLogger(__name__)

NO_SUBJECT = "(No subject)"


class HeaderParser:
    """Parses fetched header blocks into validated MailRecord objects."""

    def __init__(self) -> None:
        self._parser = BytesHeaderParser(policy=compat32)

    def parse(
        self,
        uid: int,
        raw_headers: bytes,
        *,
        folder: str,
        account: str,
        fetched_at: datetime,
    ) -> MailRecord:
        """Parse one header block.

        Args:
            uid: Mailbox UID of the message.
            raw_headers: Header bytes returned by the header FETCH.
            folder: Source folder of the session.
            account: Mailbox identity of the session.
            fetched_at: Used as the date when the Date header is missing or invalid.

        Returns:
            Parsed MailRecord.

        Raises:
            ParseError: If the UID or header block is unusable.
        """
        if not isinstance(raw_headers, (bytes, bytearray)):
            raise ParseError(f"Headers for UID {uid} are not bytes: {type(raw_headers).__name__}")
        try:
            message = self._parser.parsebytes(bytes(raw_headers))
        except Exception as e:
            raise ParseError(f"Failed to parse headers for UID {uid}: {e}") from e

        subject = self._decode(message.get("Subject")).strip()

        try:
            return MailRecord(
                uid=uid,
                sender=self._decode(message.get("From")),
                to=self._decode(message.get("To")),
                subject=subject or NO_SUBJECT,
                date=self._parse_date(message.get("Date"), fetched_at),
                folder=folder,
                account=account,
            )
        except ValueError as e:
            raise ParseError(f"Invalid record for UID {uid}: {e}") from e

    @staticmethod
    def _decode(value: object) -> str:
        """Decode RFC 2047 encoded words and unfold continuation lines.

        Keeps the raw text if decoding fails.
        """
        if value is None:
            return ""
        try:
            text = str(make_header(decode_header(str(value))))
        except Exception:
            text = str(value)
        return " ".join(text.split())

    @staticmethod
    def _parse_date(value: object, fallback: datetime) -> datetime:
        """Parse an RFC 2822 date, returning ``fallback`` if absent or invalid.

        Naive dates are taken as UTC.
        """
        if not value:
            return fallback
        try:
            parsed = parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            logger.warning("Failed to parse date: %s", value)
            return fallback
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
