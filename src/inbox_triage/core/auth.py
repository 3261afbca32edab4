"""OAuth 2.0 access tokens for IMAP XOAUTH2.

Tokens are cached on disk and refreshed in place; the installed-app consent
flow only runs when there is no usable cached token.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from inbox_triage.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

# Full mailbox scope; XOAUTH2 login rejects the narrower Gmail API scopes.
SCOPES = ["https://mail.google.com/"]


@dataclass(frozen=True)
class AccessToken:
    """Bearer token handed to the mailbox login."""

    token: str
    expiry: datetime | None


class TokenProvider:
    """Hands out a valid access token on every call.

    Thread-safe: the watcher and a reconnect may ask for a token concurrently.
    """

    def __init__(self, credentials_path: Path, token_path: Path) -> None:
        self._credentials_path = credentials_path
        self._token_path = token_path
        self._creds: Credentials | None = None
        self._lock = threading.Lock()

    def get_access_token(self) -> AccessToken:
        """Return a usable token, loading, refreshing or authorizing as needed.

        Raises:
            AuthenticationError: If no valid token can be obtained.
        """
        with self._lock:
            creds = self._creds or self._load_cached()
            if creds is not None and not creds.valid:
                creds = self._refresh(creds)
            if creds is None:
                creds = self._authorize()
            if not creds.token:
                raise AuthenticationError("OAuth credentials carry no access token")

            self._creds = creds
            return AccessToken(token=creds.token, expiry=creds.expiry)

    def _load_cached(self) -> Credentials | None:
        if not self._token_path.exists():
            return None
        try:
            return Credentials.from_authorized_user_file(str(self._token_path), SCOPES)
        except (ValueError, OSError) as e:
            logger.warning("Ignoring unreadable token cache %s: %s", self._token_path, e)
            return None

    def _refresh(self, creds: Credentials) -> Credentials | None:
        """Refresh expired credentials; None means a new consent is needed."""
        if not creds.refresh_token:
            return None
        try:
            creds.refresh(Request())
        except GoogleAuthError as e:
            logger.warning("Token refresh failed, re-authorizing: %s", e)
            return None
        self._save(creds)
        return creds

    def _authorize(self) -> Credentials:
        if not self._credentials_path.exists():
            raise AuthenticationError(
                f"OAuth client file not found: {self._credentials_path}. "
                "Create a desktop OAuth client and download its JSON."
            )
        try:
            flow = InstalledAppFlow.from_client_secrets_file(
                str(self._credentials_path), SCOPES
            )
            creds = flow.run_local_server(port=0)
        except Exception as e:
            raise AuthenticationError(f"OAuth consent flow failed: {e}") from e
        self._save(creds)
        logger.info("Authorized; token cached at %s", self._token_path)
        return creds

    def _save(self, creds: Credentials) -> None:
        self._token_path.parent.mkdir(parents=True, exist_ok=True)
        self._token_path.write_text(creds.to_json())
