"""Configuration via pydantic-settings with .env support."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class MailSyncSettings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="MAILSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # IMAP account
    imap_server: str = "imap.gmail.com"
    imap_port: int = 993
    account: str = ""
    password: str = ""
    auth_method: Literal["password", "oauth"] = "password"
    mailbox: str = "[Gmail]/All Mail"

    # OAuth credentials (auth_method="oauth")
    credentials_path: Path = Path("credentials/client_secret.json")
    token_path: Path = Path("credentials/token.json")

    # Fetching
    batch_size: int = 500

    # Database
    database_path: Path = Path("data/mailsync.db")

    # Connection retry
    max_retries: int = 5
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 60.0
    timeout_seconds: float = 60.0

    # Logging
    log_level: str = "INFO"

    def ensure_directories(self) -> None:
        """Create data and credential directories if they don't exist."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.credentials_path.parent.mkdir(parents=True, exist_ok=True)
