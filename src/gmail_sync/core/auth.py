"""OAuth 2.0 consent, refresh-token exchange, and Gmail service construction."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import Resource, build

from gmail_sync.core.exceptions import AuthError, NetworkError

logger = logging.getLogger(__name__)

# gmail.modify covers read access and label changes (read state, archive).
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]


def run_consent_flow(client_secrets_path: Path) -> Credentials:
    """Run the installed-app consent flow in a local browser.

    Args:
        client_secrets_path: Path to OAuth 2.0 client credentials JSON.

    Returns:
        Google OAuth2 credentials carrying a refresh token.

    Raises:
        AuthError: If the secrets file is missing or consent fails.
    """
    if not client_secrets_path.exists():
        raise AuthError(
            f"Credentials file not found: {client_secrets_path}. "
            "Download it from Google Cloud Console."
        )

    try:
        flow = InstalledAppFlow.from_client_secrets_file(str(client_secrets_path), SCOPES)
        creds = flow.run_local_server(port=0, access_type="offline", prompt="consent")
    except Exception as e:
        raise AuthError(f"OAuth flow failed: {e}") from e

    if not creds.refresh_token:
        raise AuthError("OAuth flow did not return a refresh token")
    logger.info("Authentication successful")
    return creds


def credentials_expiry(creds: Credentials) -> datetime:
    """Absolute UTC expiry of a google-auth credential (which stores naive UTC)."""
    if creds.expiry is None:
        return datetime.now(UTC) + timedelta(hours=1)
    return creds.expiry.replace(tzinfo=UTC)


class OAuthRefresher:
    """Exchanges a refresh token for a new access token at the provider token endpoint."""

    def __init__(self, client_id: str, client_secret: str, token_uri: str) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_uri = token_uri

    def refresh(self, refresh_token: str) -> tuple[str, datetime]:
        """Perform the refresh-token exchange.

        Returns:
            Tuple of (access_token, absolute UTC expiry).

        Raises:
            AuthError: The provider rejected the refresh token.
            NetworkError: The token endpoint could not be reached.
        """
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self._token_uri,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=SCOPES,
        )
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise AuthError(f"Token refresh rejected: {e}") from e
        except TransportError as e:
            raise NetworkError(f"Token refresh failed: {e}") from e

        return creds.token, credentials_expiry(creds)


def build_gmail_service(access_token: str, timeout_seconds: float = 30.0) -> Resource:
    """Build a Gmail API service resource for an already-valid access token.

    Args:
        access_token: OAuth access token for the user.
        timeout_seconds: Socket timeout for every provider request.

    Returns:
        Gmail API service resource.
    """
    creds = Credentials(token=access_token)
    http = AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout_seconds))
    return build("gmail", "v1", http=http, cache_discovery=False)
