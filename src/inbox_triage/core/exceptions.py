"""Custom exceptions for Inbox Triage."""


class InboxTriageError(Exception):
    """Base exception for all Inbox Triage errors."""


class AuthenticationError(InboxTriageError):
    """Failed to obtain or refresh mailbox credentials."""


class SessionError(InboxTriageError):
    """Failed to open or use the mailbox session."""


class SessionEndedError(SessionError):
    """The server closed the mailbox session."""


class FetchError(InboxTriageError):
    """A SEARCH or FETCH command failed; no records were produced."""


class ParseError(InboxTriageError):
    """Failed to turn raw message headers into a record."""


class RateLimitError(InboxTriageError):
    """Classification oracle rate limit exceeded."""


class OracleError(InboxTriageError):
    """Transient classification oracle failure."""


class MalformedResponseError(OracleError):
    """Oracle response did not contain a parseable category list."""


class NonRetryableOracleError(InboxTriageError):
    """Oracle failure that retrying cannot fix (model, capability or shape)."""


class IndexingError(InboxTriageError):
    """The document index could not be written."""
