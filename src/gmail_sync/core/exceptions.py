"""Custom exceptions for Gmail Sync."""


class GmailSyncError(Exception):
    """Base exception for all Gmail Sync errors."""


class AuthError(GmailSyncError):
    """Token refresh was rejected by the provider (consent revoked or invalid client)."""


class UnauthorizedError(GmailSyncError):
    """Caller did not present the privileged scheduler credential."""


class CredentialNotFoundError(GmailSyncError):
    """No stored credential for the requested user and provider."""


class RateLimitError(GmailSyncError):
    """Gmail API rate limit exceeded."""


class NetworkError(GmailSyncError):
    """Transport-level failure talking to the provider."""


class GmailApiError(GmailSyncError):
    """Non-retryable error response from the Gmail API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CursorInvalidError(GmailSyncError):
    """The stored change-feed cursor was rejected as invalid or expired."""


class ParseError(GmailSyncError):
    """Failed to parse a Gmail thread or message payload."""


class PersistenceError(GmailSyncError):
    """Failed to write a record to the database."""


class LockTimeoutError(GmailSyncError):
    """Could not acquire a mutex within the configured timeout."""


class EnrichmentError(GmailSyncError):
    """LLM enrichment of a thread failed."""


class EnrichmentParseError(EnrichmentError):
    """LLM output could not be parsed or validated."""


class ArchiveActionError(GmailSyncError):
    """Provider rejected the archive (label-modify) call."""
