"""
email_sender.py — Email delivery through two SMTP accounts.

Delivery mechanism:
    • Every configured SMTP account sends the same message to every
      recipient. This is not failover: both attempts always happen and each
      is recorded under its own key (``email_<account>``).
    • Plain-text body plus an HTML alternative, attachments read from disk.
    • A fixed 2-unit pause follows every individual transmission to stay
      under provider rate limits.

═══════════════════════════════════════════════════════════════════════════
RECORDS PER RECIPIENT
═══════════════════════════════════════════════════════════════════════════

    Address lacking "@"          → {"email": failed, "Invalid email"}
    No configured SMTP account   → {"email": failed, "No SMTP servers available"}
    Otherwise                    → {"email_<acct1>": ..., "email_<acct2>": ...}

A recipient counts as reached when at least one account succeeded.

smtplib is blocking, so each transmission runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import html
import logging
import mimetypes
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid
from pathlib import Path
from typing import List, Optional, Sequence

from backend.app.core.errors import RecipientValidationError
from backend.app.dispatch.channel_config import EmailConfig, SmtpAccountConfig
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.models import (
    EMAIL_FALLBACK_KEY,
    Attachment,
    Channel,
    ChannelDeliveryRecord,
    EmailDeliveryRecord,
    Message,
    RecipientResult,
    email_record_key,
)
from backend.app.dispatch.recipients import ResolvedRecipient
from backend.app.dispatch.retry import Pause

logger = logging.getLogger(__name__)

SEND_PAUSE_UNITS = 2
DEFAULT_SUBJECT = "Message"
INVALID_EMAIL = "Invalid email"
NO_SMTP_SERVERS = "No SMTP servers available"


# ═══════════════════════════════════════════════════════════════════════════
# SMTP Transport
# ═══════════════════════════════════════════════════════════════════════════

class SmtpTransport:
    """Sends one prepared EmailMessage through one SMTP account."""

    def _connect(self, account: SmtpAccountConfig) -> smtplib.SMTP:
        if account.secure:
            smtp: smtplib.SMTP = smtplib.SMTP_SSL(account.host, account.port, timeout=account.timeout)
        else:
            smtp = smtplib.SMTP(account.host, account.port, timeout=account.timeout)
        try:
            smtp.ehlo()
            if not account.secure and smtp.has_extn("starttls"):
                smtp.starttls()
                smtp.ehlo()
            if account.user and account.password:
                smtp.login(account.user, account.password)
        except Exception:
            smtp.close()
            raise
        return smtp

    def _send_sync(self, account: SmtpAccountConfig, email: EmailMessage) -> str:
        sender = str(email["From"])
        to = str(email["To"])
        with self._connect(account) as smtp:
            code, resp = smtp.mail(sender)
            if code != 250:
                raise smtplib.SMTPSenderRefused(code, resp, sender)
            code, resp = smtp.rcpt(to)
            if code not in (250, 251):
                raise smtplib.SMTPRecipientsRefused({to: (code, resp)})
            code, resp = smtp.data(email.as_bytes())
        return f"{code} {resp.decode('utf-8', errors='replace')}"

    def _verify_sync(self, account: SmtpAccountConfig) -> None:
        with self._connect(account) as smtp:
            smtp.noop()

    async def send(self, account: SmtpAccountConfig, email: EmailMessage) -> str:
        """Transmit ``email``; returns the server's final DATA response."""
        return await asyncio.to_thread(self._send_sync, account, email)

    async def verify(self, account: SmtpAccountConfig) -> None:
        await asyncio.to_thread(self._verify_sync, account)


# ═══════════════════════════════════════════════════════════════════════════
# Message Building
# ═══════════════════════════════════════════════════════════════════════════

def _html_body(text: str) -> str:
    return html.escape(text).replace("\n", "<br>")


def _attach_file(email: EmailMessage, attachment: Attachment) -> None:
    content = Path(attachment.path).read_bytes()
    mime, _ = mimetypes.guess_type(attachment.original_name)
    maintype, _, subtype = (mime or "application/octet-stream").partition("/")
    email.add_attachment(
        content,
        maintype=maintype or "application",
        subtype=subtype or "octet-stream",
        filename=attachment.original_name,
    )


def build_email(
    message: Message,
    account: SmtpAccountConfig,
    to: str,
    attachments: Sequence[Attachment],
    *,
    mailer_name: str = "MessageService",
) -> EmailMessage:
    """Render ``message`` as an EmailMessage from ``account`` to ``to``."""
    email = EmailMessage()
    email["From"] = account.from_address
    email["To"] = to
    email["Subject"] = message.subject or DEFAULT_SUBJECT
    domain = account.from_address.partition("@")[2] or None
    email["Message-ID"] = make_msgid(domain=domain)
    email["X-Priority"] = "1"
    email["X-Mailer"] = mailer_name

    email.set_content(message.body)
    email.add_alternative(_html_body(message.body), subtype="html")

    for attachment in attachments:
        _attach_file(email, attachment)
    return email


# ═══════════════════════════════════════════════════════════════════════════
# Sender
# ═══════════════════════════════════════════════════════════════════════════

def _validate_address(address: str) -> None:
    if "@" not in address:
        raise RecipientValidationError(address, Channel.EMAIL.value, INVALID_EMAIL)


def _single_failure(address: str, error: str) -> RecipientResult:
    record = EmailDeliveryRecord(success=False, error=error)
    return RecipientResult(
        recipient=address,
        success=False,
        records={EMAIL_FALLBACK_KEY: record},
        error=error,
    )


class EmailSender(ChannelSender):
    channel = Channel.EMAIL

    def __init__(
        self,
        config: EmailConfig,
        *,
        transport: Optional[SmtpTransport] = None,
        time_unit: float = 1.0,
        pause: Pause = asyncio.sleep,
    ) -> None:
        super().__init__(time_unit=time_unit, pause=pause)
        self.config = config
        self.transport = transport or SmtpTransport()

    @property
    def configured(self) -> bool:
        return self.config.configured

    async def send(
        self,
        message: Message,
        recipients: Sequence[ResolvedRecipient],
        attachments: Sequence[Attachment],
    ) -> List[RecipientResult]:
        accounts = self.config.configured_accounts
        logger.info(
            "[EMAIL] Message %s → %d recipient(s) via %d account(s), %d attachment(s)",
            message.message_id, len(recipients), len(accounts), len(attachments),
        )

        results: List[RecipientResult] = []
        for resolved in recipients:
            address = resolved.key
            try:
                _validate_address(address)
            except RecipientValidationError as exc:
                logger.warning("[EMAIL] Invalid address %r", address)
                results.append(_single_failure(address, exc.message))
                continue

            if not accounts:
                results.append(_single_failure(address, NO_SMTP_SERVERS))
                continue

            records = {}
            for account in accounts:
                records[email_record_key(account.identifier)] = await self._send_one(
                    message, account, address, attachments,
                )
                await self.pause_units(SEND_PAUSE_UNITS)

            success = any(r.success for r in records.values())
            results.append(RecipientResult(
                recipient=address,
                success=success,
                records=records,
                error=None if success else "All SMTP accounts failed",
            ))

        return results

    async def _send_one(
        self,
        message: Message,
        account: SmtpAccountConfig,
        address: str,
        attachments: Sequence[Attachment],
    ) -> ChannelDeliveryRecord:
        try:
            email = await asyncio.to_thread(
                build_email, message, account, address, attachments,
                mailer_name=self.config.mailer_name,
            )
            response = await self.transport.send(account, email)
        except Exception as exc:
            logger.error(
                "[EMAIL] %s → %s failed: %s", account.identifier, address, exc,
                extra={"message_id": message.message_id, "channel": "email", "recipient": address},
            )
            return EmailDeliveryRecord(
                success=False,
                error=str(exc) or type(exc).__name__,
                account=account.identifier,
                sender=account.from_address,
            )

        logger.info(
            "[EMAIL] %s → %s sent (%s)", account.identifier, address, response,
            extra={"message_id": message.message_id, "channel": "email", "recipient": address},
        )
        return EmailDeliveryRecord(
            success=True,
            account=account.identifier,
            sender=account.from_address,
            message_id=str(email["Message-ID"]),
            response=response,
        )

    async def verify(self) -> bool:
        """Connect and authenticate with every configured account."""
        ok = True
        for account in self.config.configured_accounts:
            try:
                await self.transport.verify(account)
                logger.info("[EMAIL] %s (%s:%d) reachable", account.identifier, account.host, account.port)
            except Exception as exc:
                ok = False
                logger.error("[EMAIL] %s unreachable: %s", account.identifier, exc)
        for account in self.config.accounts:
            if not account.configured:
                logger.warning("[EMAIL] %s has no password; account disabled", account.identifier)
        return ok and self.configured
