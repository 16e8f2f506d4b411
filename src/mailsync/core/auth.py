"""Google OAuth credentials for IMAP XOAUTH2 login."""

from __future__ import annotations

import logging
from pathlib import Path

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from mailsync.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

# Gmail only accepts the full mail scope over IMAP
SCOPES = ["https://mail.google.com/"]


def authenticate(credentials_path: Path, token_path: Path) -> Credentials:
    """Return usable credentials: cached, refreshed, or from a browser consent.

    Raises:
        AuthenticationError: No cached token works and the consent flow
            cannot run or fails.
    """
    creds = _load_cached(token_path)
    if creds is not None and creds.valid:
        return creds
    if creds is not None and creds.expired and creds.refresh_token and _refresh(creds):
        _save_token(creds, token_path)
        return creds
    return _consent(credentials_path, token_path)


def xoauth2_string(account: str, access_token: str) -> bytes:
    """Build the SASL XOAUTH2 initial client response."""
    return f"user={account}\x01auth=Bearer {access_token}\x01\x01".encode()


def _load_cached(token_path: Path) -> Credentials | None:
    if not token_path.exists():
        return None
    try:
        return Credentials.from_authorized_user_file(str(token_path), SCOPES)
    except (ValueError, OSError) as e:
        logger.warning("Ignoring unreadable token cache %s: %s", token_path, e)
        return None


def _refresh(creds: Credentials) -> bool:
    try:
        creds.refresh(Request())
    except Exception as e:
        logger.warning("Token refresh failed, asking for consent again: %s", e)
        return False
    return True


def _consent(credentials_path: Path, token_path: Path) -> Credentials:
    if not credentials_path.exists():
        raise AuthenticationError(
            f"OAuth client file not found: {credentials_path}. "
            "Create a desktop client in Google Cloud Console and download it there."
        )
    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
        creds = flow.run_local_server(port=0)
    except Exception as e:
        raise AuthenticationError(f"OAuth consent failed: {e}") from e
    _save_token(creds, token_path)
    logger.info("Authorized; token cached at %s", token_path)
    return creds


def _save_token(creds: Credentials, token_path: Path) -> None:
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())
