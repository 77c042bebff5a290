"""Encrypted-at-rest OAuth credential repository keyed by (user, provider)."""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime

from gmail_sync.core.crypto import TokenCipher
from gmail_sync.core.exceptions import AuthError, CredentialNotFoundError, PersistenceError
from gmail_sync.core.models import Credential
from gmail_sync.storage.database import MailDatabase

logger = logging.getLogger(__name__)


def cursor_is_behind(candidate: str, current: str) -> bool:
    """True if ``candidate`` is strictly older than ``current``.

    Gmail history ids are monotonically increasing integers. Non-numeric
    cursors are opaque and never compared.
    """
    if candidate.isdigit() and current.isdigit():
        return int(candidate) < int(current)
    return False


class CredentialStore:
    """Stores credentials with refresh and access tokens encrypted by ``TokenCipher``."""

    def __init__(self, db: MailDatabase, cipher: TokenCipher) -> None:
        self._db = db
        self._cipher = cipher

    def store_credential(
        self,
        user_id: str,
        provider: str,
        *,
        refresh_token: str,
        access_token: str,
        expires_at: datetime,
        account_email: str = "",
        display_name: str | None = None,
    ) -> None:
        """Insert or replace a credential after OAuth consent.

        An existing sync cursor is preserved on reconnect.
        """
        now = datetime.now(UTC).isoformat()
        try:
            with self._db.conn:
                self._db.conn.execute(
                    """INSERT INTO credentials
                       (user_id, provider, refresh_token_encrypted, access_token_encrypted,
                        expires_at, account_email, display_name, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(user_id, provider) DO UPDATE SET
                           refresh_token_encrypted = excluded.refresh_token_encrypted,
                           access_token_encrypted = excluded.access_token_encrypted,
                           expires_at = excluded.expires_at,
                           account_email = excluded.account_email,
                           display_name = COALESCE(excluded.display_name, display_name),
                           updated_at = excluded.updated_at""",
                    (
                        user_id,
                        provider,
                        self._cipher.encrypt(refresh_token),
                        self._cipher.encrypt(access_token),
                        expires_at.isoformat(),
                        account_email,
                        display_name,
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to store credential for {user_id}: {e}") from e
        logger.info("Stored %s credential for user %s", provider, user_id)

    def get_credential(self, user_id: str, provider: str) -> Credential | None:
        row = self._db.conn.execute(
            "SELECT * FROM credentials WHERE user_id = ? AND provider = ?",
            (user_id, provider),
        ).fetchone()
        return self._to_credential(row) if row else None

    def require_credential(self, user_id: str, provider: str) -> Credential:
        credential = self.get_credential(user_id, provider)
        if credential is None:
            raise CredentialNotFoundError(f"No {provider} credential for user {user_id}")
        return credential

    def list_credentials(self, provider: str) -> list[Credential]:
        """All decrypted credentials for a provider, ordered by user id."""
        rows = self._db.conn.execute(
            "SELECT * FROM credentials WHERE provider = ? ORDER BY user_id",
            (provider,),
        ).fetchall()

        credentials: list[Credential] = []
        for row in rows:
            try:
                credentials.append(self._to_credential(row))
            except AuthError:
                logger.error("Skipping credential for user %s: cannot decrypt", row["user_id"])
        return credentials

    def update_access_token(
        self, user_id: str, provider: str, access_token: str, expires_at: datetime
    ) -> None:
        now = datetime.now(UTC).isoformat()
        with self._db.conn:
            self._db.conn.execute(
                """UPDATE credentials
                   SET access_token_encrypted = ?, expires_at = ?, updated_at = ?
                   WHERE user_id = ? AND provider = ?""",
                (self._cipher.encrypt(access_token), expires_at.isoformat(), now, user_id, provider),
            )

    def update_sync_cursor(
        self, user_id: str, provider: str, cursor: str, *, allow_rewind: bool = False
    ) -> bool:
        """Record a new change-feed cursor.

        The cursor only moves forward unless ``allow_rewind`` is set, which the
        pipeline does after the provider rejected the stored cursor.

        Returns True if the stored value changed.
        """
        current = self._db.conn.execute(
            "SELECT sync_cursor FROM credentials WHERE user_id = ? AND provider = ?",
            (user_id, provider),
        ).fetchone()
        if current is None:
            raise CredentialNotFoundError(f"No {provider} credential for user {user_id}")

        stored = current["sync_cursor"]
        if stored == cursor:
            return False
        if stored and not allow_rewind and cursor_is_behind(cursor, stored):
            logger.warning(
                "Refusing to move cursor for %s backwards (%s -> %s)", user_id, stored, cursor
            )
            return False

        now = datetime.now(UTC).isoformat()
        with self._db.conn:
            self._db.conn.execute(
                """UPDATE credentials SET sync_cursor = ?, updated_at = ?
                   WHERE user_id = ? AND provider = ?""",
                (cursor, now, user_id, provider),
            )
        return True

    def reset_sync_cursor(self, user_id: str, provider: str) -> None:
        """Clear the cursor so the next tick performs a full scan."""
        now = datetime.now(UTC).isoformat()
        with self._db.conn:
            self._db.conn.execute(
                """UPDATE credentials SET sync_cursor = NULL, updated_at = ?
                   WHERE user_id = ? AND provider = ?""",
                (now, user_id, provider),
            )

    def update_account_email(self, user_id: str, provider: str, account_email: str) -> None:
        with self._db.conn:
            self._db.conn.execute(
                """UPDATE credentials SET account_email = ?
                   WHERE user_id = ? AND provider = ? AND account_email != ?""",
                (account_email, user_id, provider, account_email),
            )

    def delete_credential(self, user_id: str, provider: str) -> bool:
        """Remove a credential when the user disconnects. Returns True if a row was deleted."""
        with self._db.conn:
            cursor = self._db.conn.execute(
                "DELETE FROM credentials WHERE user_id = ? AND provider = ?",
                (user_id, provider),
            )
        return cursor.rowcount > 0

    def _to_credential(self, row: sqlite3.Row) -> Credential:
        return Credential(
            user_id=row["user_id"],
            provider=row["provider"],
            refresh_token=self._cipher.decrypt(row["refresh_token_encrypted"]) or "",
            access_token=self._cipher.decrypt(row["access_token_encrypted"]) or "",
            expires_at=datetime.fromisoformat(row["expires_at"]),
            sync_cursor=row["sync_cursor"],
            account_email=row["account_email"],
            display_name=row["display_name"],
        )
