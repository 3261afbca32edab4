"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class InboxTriageSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="TRIAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OAuth credentials
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")

    # Mailbox
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    imap_ssl: bool = True
    account: str = ""
    imap_password: str | None = None
    folder: str = "INBOX"

    # Session lifecycle
    auth_timeout_seconds: float = 30.0
    backfill_days: int = 30
    reconnect_delay_seconds: float = 5.0
    idle_renewal_seconds: float = 600.0
    fetch_chunk_size: int = 500

    # Database
    database_path: Path = Path("data/inbox_triage.db")

    # Classification
    batch_size: int = 5
    oracle_api_key: str | None = None
    oracle_base_url: str = "https://api.groq.com/openai/v1"
    oracle_model: str = "moonshotai/kimi-k2-instruct"
    oracle_temperature: float = 0.1
    oracle_max_tokens: int = 1000

    # Rate limiting & retry
    oracle_max_attempts: int = 2
    rate_limit_backoff_seconds: float = 3.0
    oracle_error_backoff_seconds: float = 2.0
    oracle_window_calls: int = 100
    oracle_window_seconds: float = 60.0
    inter_batch_delay_seconds: float = 0.5
    drain_retry_delay_seconds: float = 5.0

    # Notifications
    slack_webhook_url: str | None = None
    webhook_url: str | None = None
    notification_delay_seconds: float = 0.5
    notification_timeout_seconds: float = 10.0

    # HTTP API
    api_host: str = "127.0.0.1"
    api_port: int = 3000
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:5174"]

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data and credential directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
