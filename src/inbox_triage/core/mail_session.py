"""IMAP mailbox session: login, folder selection, search, header fetch and IDLE."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError

from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.auth import TokenProvider
from inbox_triage.core.exceptions import FetchError, SessionEndedError, SessionError

logger = logging.getLogger(__name__)

HEADER_FIELDS = "FROM TO SUBJECT DATE"
HEADER_FETCH_ITEM = f"BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})]"


class MailSession:
    """One authenticated IMAP connection bound to a mailbox account.

    New-mail, error and end events surface through ``wait_for_mail``: it
    returns the number of newly arrived messages, or raises
    ``SessionEndedError`` when the server drops the session.
    """

    def __init__(self, client: IMAPClient, account: str) -> None:
        self._client = client
        self._account = account
        self._folder: str | None = None
        self._exists: int | None = None

    @property
    def account(self) -> str:
        return self._account

    @property
    def folder(self) -> str:
        if self._folder is None:
            raise SessionError("No folder selected. Call open_folder() first.")
        return self._folder

    def open_folder(self, name: str, readonly: bool = True) -> None:
        """Select a folder; readonly keeps the \\Seen flags untouched."""
        try:
            info = self._client.select_folder(name, readonly=readonly)
        except (IMAPClientError, OSError) as e:
            raise SessionError(f"Failed to open folder {name}: {e}") from e
        self._folder = name
        self._exists = info.get(b"EXISTS")
        logger.info("Opened folder %s (%s messages)", name, self._exists)

    def search(self, criteria: Sequence[Any]) -> list[int]:
        """Run a UID SEARCH and return matching UIDs."""
        try:
            return list(self._client.search(list(criteria)))
        except (IMAPClientError, OSError) as e:
            raise FetchError(f"Search {criteria!r} failed: {e}") from e

    def fetch_headers(self, uids: Sequence[int]) -> dict[int, bytes]:
        """Fetch the From/To/Subject/Date header block for each UID."""
        if not uids:
            return {}
        try:
            response = self._client.fetch(list(uids), [HEADER_FETCH_ITEM])
        except (IMAPClientError, OSError) as e:
            raise FetchError(f"Header fetch for {len(uids)} messages failed: {e}") from e

        headers: dict[int, bytes] = {}
        for uid, data in response.items():
            # The server echoes the item as BODY[HEADER.FIELDS (...)], without PEEK.
            blob = next(
                (value for key, value in data.items() if key.startswith(b"BODY[")),
                None,
            )
            if blob is not None:
                headers[uid] = blob
        return headers

    def wait_for_mail(self, timeout: float) -> int:
        """Block in IDLE for up to ``timeout`` seconds.

        Returns:
            Number of newly arrived messages (0 when IDLE simply timed out).

        Raises:
            SessionEndedError: If the server closed the connection.
        """
        try:
            self._client.idle()
            responses = self._client.idle_check(timeout=timeout)
            _, done_responses = self._client.idle_done()
        except (IMAPClientAbortError, OSError) as e:
            raise SessionEndedError(f"Session dropped during IDLE: {e}") from e
        except IMAPClientError as e:
            raise SessionError(f"IDLE failed: {e}") from e

        return self._count_new(list(responses) + list(done_responses or []))

    def _count_new(self, responses: list[Any]) -> int:
        """Apply untagged responses in order to the known message count.

        Each EXPUNGE shrinks the mailbox by one, so an EXISTS that follows a
        deletion still reveals the arrival.
        """
        arrived = 0
        for response in responses:
            if not isinstance(response, tuple) or len(response) < 2:
                continue
            if response[0] == b"BYE":
                raise SessionEndedError(f"Server closed session: {response[1]!r}")
            if not isinstance(response[0], int):
                continue
            if response[1] == b"EXPUNGE":
                if self._exists:
                    self._exists -= 1
            elif response[1] == b"EXISTS":
                if self._exists is None:
                    arrived += 1
                else:
                    arrived += max(response[0] - self._exists, 0)
                self._exists = response[0]
        return arrived

    def close(self) -> None:
        """Log out, ignoring errors from an already dead connection."""
        try:
            self._client.logout()
            logger.info("Disconnected from IMAP server")
        except Exception as e:
            logger.warning("Error during logout: %s", e)


def connect_session(settings: InboxTriageSettings, tokens: TokenProvider | None) -> MailSession:
    """Open and authenticate a session.

    Uses XOAUTH2 with a fresh access token unless ``imap_password`` is set.
    The socket timeout doubles as the authentication timeout.
    """
    logger.info(
        "Connecting to IMAP server %s:%d (timeout: %.0fs)",
        settings.imap_host, settings.imap_port, settings.auth_timeout_seconds,
    )
    try:
        client = IMAPClient(
            host=settings.imap_host,
            port=settings.imap_port,
            ssl=settings.imap_ssl,
            timeout=settings.auth_timeout_seconds,
        )
    except (IMAPClientError, OSError) as e:
        raise SessionError(f"Failed to connect to {settings.imap_host}: {e}") from e

    try:
        if settings.imap_password:
            client.login(settings.account, settings.imap_password)
        else:
            if tokens is None:
                raise SessionError("No password configured and no token provider given")
            access = tokens.get_access_token()
            client.oauth2_login(settings.account, access.token)
    except (IMAPClientError, OSError) as e:
        _quiet_shutdown(client)
        raise SessionError(f"Login failed for {settings.account}: {e}") from e
    except Exception:
        _quiet_shutdown(client)
        raise

    logger.info("Logged in as %s", settings.account)
    return MailSession(client, settings.account)


def _quiet_shutdown(client: IMAPClient) -> None:
    try:
        client.shutdown()
    except Exception as e:
        logger.debug("Socket shutdown after failed login: %s", e)
