"""Access-token lifecycle: expiry check, locked refresh, atomic persist."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from gmail_sync.core.auth import OAuthRefresher
from gmail_sync.core.exceptions import CredentialNotFoundError
from gmail_sync.core.locks import DistributedMutex
from gmail_sync.core.models import Credential
from gmail_sync.storage.credential_store import CredentialStore

logger = logging.getLogger(__name__)


class TokenManager:
    """Hands out valid access tokens, refreshing at most once per expiry.

    Refresh runs under a mutex keyed by (user, provider). Whoever gets the
    lock second re-reads the stored credential and returns the winner's
    token instead of refreshing again.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresher: OAuthRefresher,
        mutex: DistributedMutex,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._mutex = mutex
        self._clock = clock or (lambda: datetime.now(UTC))

    @staticmethod
    def lock_key(credential: Credential) -> str:
        return f"token-refresh:{credential.user_id}:{credential.provider}"

    def get_valid_access_token(self, credential: Credential) -> str:
        """Return an unexpired access token for the credential's user.

        Raises:
            AuthError: The refresh-token exchange was rejected.
            NetworkError: The token endpoint could not be reached.
            LockTimeoutError: Another refresh held the lock for too long.
        """
        if not credential.is_expired(self._clock()):
            return credential.access_token

        token = self._mutex.acquire(self.lock_key(credential))
        try:
            current = self._store.get_credential(credential.user_id, credential.provider)
            if current is None:
                raise CredentialNotFoundError(
                    f"Credential for {credential.user_id} was removed during refresh"
                )
            if not current.is_expired(self._clock()):
                logger.debug("Token for %s already refreshed by another caller", credential.user_id)
                return current.access_token

            logger.info("Refreshing access token for user %s", credential.user_id)
            access_token, expires_at = self._refresher.refresh(current.refresh_token)
            self._store.update_access_token(
                credential.user_id, credential.provider, access_token, expires_at
            )
            return access_token
        finally:
            self._mutex.release(token)
