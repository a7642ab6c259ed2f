"""Sync engine configuration settings."""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Provider sync configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Key material
    email_encryption_key: Optional[str] = Field(
        default=None,
        description="Hex-encoded 32-byte AES key for stored IMAP credentials",
    )
    credential_vault_key: Optional[str] = Field(
        default=None,
        description="Master key for the OAuth token vault",
    )
    credential_vault_salt: str = Field(
        default="inboxsync-credential-vault-salt",
        description="Salt used to derive the token vault key",
    )

    # Incremental sync
    initial_sync_window_hours: int = Field(
        default=24,
        description="Look-back window for the first sync of an account",
    )
    max_fetch_concurrency: int = Field(
        default=4,
        description="Upper bound on concurrent detail fetches per account",
    )

    # Gmail
    gmail_max_page_size: int = Field(default=500, description="Gmail list page limit")

    # IMAP
    imap_mailbox: str = Field(default="INBOX")
    imap_timeout_seconds: int = Field(default=15)

    log_level: str = Field(default="INFO")


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached sync settings."""
    return SyncSettings()


def configure_logging(settings: Optional[SyncSettings] = None):
    """Configure root logging for processes embedding the sync engine."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
