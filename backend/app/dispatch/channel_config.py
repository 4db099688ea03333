"""
channel_config.py — Static per-channel configuration.

Built once from Settings and handed to the senders; the dispatch core never
mutates it. A channel (or an individual SMTP account) counts as configured
only when its secret is present: an SMTP account without a password, a chat
bot without a token or a community without an access token is silently
left out of dispatch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from backend.app.core.config import Settings, settings as default_settings


@dataclass(frozen=True)
class SmtpAccountConfig:
    identifier: str
    host: Optional[str] = None
    port: int = 587
    secure: bool = False
    user: Optional[str] = None
    password: Optional[str] = None
    timeout: int = 30

    @property
    def configured(self) -> bool:
        return bool(self.password and self.host)

    @property
    def from_address(self) -> str:
        return self.user or ""

    def status(self) -> Dict[str, Any]:
        return {
            "configured": self.configured,
            "user": self.user,
            "host": self.host,
            "port": self.port,
        }


@dataclass(frozen=True)
class EmailConfig:
    accounts: Tuple[SmtpAccountConfig, ...] = ()
    mailer_name: str = "MessageService"

    @property
    def configured_accounts(self) -> List[SmtpAccountConfig]:
        return [a for a in self.accounts if a.configured]

    @property
    def configured(self) -> bool:
        return bool(self.configured_accounts)

    @property
    def account_identifiers(self) -> List[str]:
        """Every declared account, configured or not."""
        return [a.identifier for a in self.accounts]


@dataclass(frozen=True)
class ChatBotConfig:
    bot_token: Optional[str] = None
    api_url: str = "https://api.telegram.org"
    max_message_length: int = 4096
    request_timeout: float = 30.0
    upload_timeout: float = 60.0

    @property
    def configured(self) -> bool:
        return bool(self.bot_token)

    @property
    def base_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/bot{self.bot_token}/"


@dataclass(frozen=True)
class SocialGraphConfig:
    access_token: Optional[str] = None
    api_url: str = "https://api.vk.com/method/"
    api_version: str = "5.131"
    request_timeout: float = 30.0
    upload_timeout: float = 60.0

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    @property
    def base_url(self) -> str:
        return self.api_url.rstrip("/") + "/"


@dataclass(frozen=True)
class ChannelConfig:
    """Configuration of every channel, as read at one point in time."""
    email: EmailConfig
    chat: ChatBotConfig
    social: SocialGraphConfig
    time_unit: float = 1.0

    def status(self) -> Dict[str, Any]:
        """Configuration summary safe to expose (no secrets)."""
        return {
            "email": {a.identifier: a.status() for a in self.email.accounts},
            "chat": {"configured": self.chat.configured},
            "social": {"configured": self.social.configured},
        }


def load_channel_config(s: Optional[Settings] = None) -> ChannelConfig:
    """Build a ChannelConfig from settings (defaults to the global ones)."""
    s = s or default_settings
    accounts = (
        SmtpAccountConfig(
            identifier=s.EMAIL_ACCT1_IDENTIFIER,
            host=s.EMAIL_ACCT1_HOST,
            port=s.EMAIL_ACCT1_PORT,
            secure=s.EMAIL_ACCT1_SECURE,
            user=s.EMAIL_ACCT1_USER,
            password=s.EMAIL_ACCT1_PASSWORD,
            timeout=s.SMTP_TIMEOUT,
        ),
        SmtpAccountConfig(
            identifier=s.EMAIL_ACCT2_IDENTIFIER,
            host=s.EMAIL_ACCT2_HOST,
            port=s.EMAIL_ACCT2_PORT,
            secure=s.EMAIL_ACCT2_SECURE,
            user=s.EMAIL_ACCT2_USER,
            password=s.EMAIL_ACCT2_PASSWORD,
            timeout=s.SMTP_TIMEOUT,
        ),
    )
    return ChannelConfig(
        email=EmailConfig(accounts=accounts, mailer_name=s.EMAIL_MAILER_NAME),
        chat=ChatBotConfig(
            bot_token=s.CHAT_BOT_TOKEN,
            api_url=s.CHAT_API_URL,
            max_message_length=s.CHAT_MAX_MESSAGE_LENGTH,
            request_timeout=s.CHAT_REQUEST_TIMEOUT,
            upload_timeout=s.CHAT_UPLOAD_TIMEOUT,
        ),
        social=SocialGraphConfig(
            access_token=s.SOCIAL_ACCESS_TOKEN,
            api_url=s.SOCIAL_API_URL,
            api_version=s.SOCIAL_API_VERSION,
            request_timeout=s.SOCIAL_REQUEST_TIMEOUT,
            upload_timeout=s.SOCIAL_UPLOAD_TIMEOUT,
        ),
        time_unit=s.DISPATCH_TIME_UNIT_SECONDS,
    )
