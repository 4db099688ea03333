"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development; every delivery
channel starts unconfigured until its credentials are supplied.

Usage:
    from backend.app.core.config import settings
    print(settings.DATABASE_URL)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Message Broadcast Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    WORKERS: int = 1
    RELOAD: bool = True

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Database ──
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/messages.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False  # log SQL queries

    # ── Email: first SMTP account ──
    EMAIL_ACCT1_IDENTIFIER: str = "acct1"
    EMAIL_ACCT1_HOST: Optional[str] = None
    EMAIL_ACCT1_PORT: int = 587
    EMAIL_ACCT1_SECURE: bool = False  # True → implicit TLS (port 465)
    EMAIL_ACCT1_USER: Optional[str] = None
    EMAIL_ACCT1_PASSWORD: Optional[str] = None

    # ── Email: second SMTP account ──
    EMAIL_ACCT2_IDENTIFIER: str = "acct2"
    EMAIL_ACCT2_HOST: Optional[str] = None
    EMAIL_ACCT2_PORT: int = 465
    EMAIL_ACCT2_SECURE: bool = True
    EMAIL_ACCT2_USER: Optional[str] = None
    EMAIL_ACCT2_PASSWORD: Optional[str] = None

    EMAIL_MAILER_NAME: str = "MessageService"
    SMTP_TIMEOUT: int = 30  # seconds

    # ── Chat bot ──
    CHAT_BOT_TOKEN: Optional[str] = None
    CHAT_API_URL: str = "https://api.telegram.org"
    CHAT_MAX_MESSAGE_LENGTH: int = 4096
    CHAT_REQUEST_TIMEOUT: float = 30.0
    CHAT_UPLOAD_TIMEOUT: float = 60.0

    # ── Social graph ──
    SOCIAL_ACCESS_TOKEN: Optional[str] = None
    SOCIAL_API_URL: str = "https://api.vk.com/method/"
    SOCIAL_API_VERSION: str = "5.131"
    SOCIAL_REQUEST_TIMEOUT: float = 30.0
    SOCIAL_UPLOAD_TIMEOUT: float = 60.0

    # ── Attachments ──
    UPLOAD_DIR: str = "./uploads"  # attachment paths must resolve inside this directory

    # ── Dispatch ──
    DISPATCH_TIME_UNIT_SECONDS: float = 1.0  # length of one pause/backoff unit
    DISPATCH_MAX_WORKERS: int = 4  # concurrent dispatch runs
    DISPATCH_SERIALIZE_PER_MESSAGE: bool = True
    JOB_RETENTION_HOURS: int = 24  # finished job records kept this long
    RESEND_INCLUDE_ATTACHMENTS: bool = False
    VERIFY_CHANNELS_ON_STARTUP: bool = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
