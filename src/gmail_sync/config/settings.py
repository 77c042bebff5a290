"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SKIP_LABELS = [
    "SPAM",
    "TRASH",
    "CATEGORY_PROMOTIONS",
    "CATEGORY_SOCIAL",
    "CATEGORY_UPDATES",
]


class GmailSyncSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_path: Path = Path("data/gmail_sync.db")

    # Secrets
    encryption_key: SecretStr = SecretStr("")
    service_key: SecretStr = SecretStr("")
    anthropic_api_key: SecretStr = SecretStr("")

    # OAuth client
    google_client_id: str = ""
    google_client_secret: SecretStr = SecretStr("")
    token_uri: str = "https://oauth2.googleapis.com/token"
    client_secrets_path: Path = Path("credentials/client_secret.json")
    provider: str = "gmail"

    # Change discovery
    first_sync_max_messages: int = 50
    first_sync_label: str = "INBOX"
    first_sync_query: str = (
        "-in:spam -in:trash -category:promotions -category:social -category:updates"
    )
    max_results_per_page: int = 100

    # Rate limiting & retry
    fetch_batch_size: int = 5
    inter_batch_delay_seconds: float = 1.0
    max_fetch_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 8.0
    inter_page_delay_seconds: float = 0.2

    # Timeouts
    request_timeout_seconds: float = 30.0
    llm_timeout_seconds: float = 60.0

    # Token refresh locking
    lock_timeout_seconds: float = 30.0
    lock_ttl_seconds: float = 120.0
    lock_poll_seconds: float = 0.1

    # Classification
    organization_domain: str = ""
    organization_name: str = ""
    routing_addresses: dict[str, str] = {}
    skip_labels: list[str] = list(DEFAULT_SKIP_LABELS)
    custom_skip_labels: list[str] = []

    # Enrichment
    llm_model: str = "claude-3-5-haiku-latest"
    llm_max_tokens: int = 2048
    summary_daily_limit: int = 100
    quota_window_hours: int = 24
    summary_freshness_minutes: int = 60
    transcript_max_messages: int = 20
    transcript_max_chars_per_message: int = 2000
    transcript_max_chars: int = 12000
    body_preview_chars: int = 500
    enrichment_workers: int = 1

    # Archive outbox
    archive_batch_limit: int = 50
    archive_inter_call_delay_seconds: float = 0.2
    archive_max_attempts: int = 3

    # Logging
    log_level: str = "INFO"

    @property
    def all_skip_labels(self) -> frozenset[str]:
        """System skip labels plus any custom exclusions."""
        return frozenset(self.skip_labels) | frozenset(self.custom_skip_labels)

    def ensure_directories(self) -> None:
        """Create data and credential directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.client_secrets_path.parent.mkdir(parents=True, exist_ok=True)
