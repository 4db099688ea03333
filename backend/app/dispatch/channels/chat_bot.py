"""
chat_bot.py — Chat-bot delivery channel via the Bot HTTP API.

Delivery mechanism:
    • sendMessage with the Markdown text (always first)
    • sendDocument for every attachment, each through the retrier
    • 1-unit pause after every recipient

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATING
═══════════════════════════════════════════════════════════════════════════

    "*{subject}*\\n\\n{body}"      (subject present)
    "{body}"                      (no subject)

    Texts longer than 4096 chars are cut to 4093 and end with "...".

═══════════════════════════════════════════════════════════════════════════
SUCCESS RULE
═══════════════════════════════════════════════════════════════════════════

A recipient succeeds when the text was accepted. Attachment failures are
reported through ``files_sent`` and ``file_errors`` but never turn a
delivered text into a failed record.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from backend.app.core.errors import ProviderError
from backend.app.dispatch.channel_config import ChatBotConfig
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.models import (
    CHAT_KEY,
    Attachment,
    Channel,
    ChatDeliveryRecord,
    Message,
    RecipientResult,
)
from backend.app.dispatch.recipients import ResolvedRecipient
from backend.app.dispatch.retry import ATTACHMENT_RETRY_POLICY, Pause, RetryPolicy, retry_transfer

logger = logging.getLogger(__name__)

RECIPIENT_PAUSE_UNITS = 1
TRUNCATION_MARKER = "..."


def format_text(message: Message, max_length: int = 4096) -> str:
    """Markdown text for one message, cut to the provider limit."""
    if message.subject:
        text = f"*{message.subject}*\n\n{message.body}"
    else:
        text = message.body
    if len(text) > max_length:
        text = text[: max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
    return text


class ChatBotSender(ChannelSender):
    channel = Channel.CHAT

    def __init__(
        self,
        config: ChatBotConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: RetryPolicy = ATTACHMENT_RETRY_POLICY,
        time_unit: float = 1.0,
        pause: Pause = asyncio.sleep,
    ) -> None:
        super().__init__(time_unit=time_unit, pause=pause)
        self.config = config
        self.retry_policy = retry_policy
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout,
        )

    @property
    def configured(self) -> bool:
        return self.config.configured

    # ── Provider calls ──

    async def _call(self, method: str, **kwargs: Any) -> Dict[str, Any]:
        """POST one Bot API method and unwrap ``result``."""
        response = await self._client.post(method, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_error or not payload.get("ok"):
            description = payload.get("description") or f"HTTP {response.status_code}"
            raise ProviderError(
                "chat", description,
                method=method, status_code=response.status_code,
            )
        result = payload.get("result")
        return result if isinstance(result, dict) else {}

    async def _send_document(self, chat_id: str, attachment: Attachment) -> Dict[str, Any]:
        content = await asyncio.to_thread(Path(attachment.path).read_bytes)
        return await self._call(
            "sendDocument",
            data={"chat_id": chat_id},
            files={"document": (attachment.original_name, content)},
            timeout=self.config.upload_timeout,
        )

    async def _send_documents(
        self,
        chat_id: str,
        attachments: Sequence[Attachment],
    ) -> Tuple[int, List[str]]:
        sent = 0
        errors: List[str] = []
        for attachment in attachments:
            outcome = await retry_transfer(
                lambda a=attachment: self._send_document(chat_id, a),
                policy=self.retry_policy,
                time_unit=self.time_unit,
                pause=self._pause,
                label=f"[CHAT] {attachment.original_name} → {chat_id}",
            )
            if outcome.success:
                sent += 1
            else:
                errors.append(f"{attachment.original_name}: {outcome.error}")
        return sent, errors

    # ── Sender contract ──

    async def send(
        self,
        message: Message,
        recipients: Sequence[ResolvedRecipient],
        attachments: Sequence[Attachment],
    ) -> List[RecipientResult]:
        text = format_text(message, self.config.max_message_length)
        logger.info(
            "[CHAT] Message %s → %d recipient(s), %d chars, %d attachment(s)",
            message.message_id, len(recipients), len(text), len(attachments),
        )

        results: List[RecipientResult] = []
        for resolved in recipients:
            chat_id = resolved.key
            record = await self._deliver(message, chat_id, text, attachments)
            results.append(RecipientResult(
                recipient=chat_id,
                success=record.success,
                records={CHAT_KEY: record},
                error=record.error,
            ))
            await self.pause_units(RECIPIENT_PAUSE_UNITS)
        return results

    async def _deliver(
        self,
        message: Message,
        chat_id: str,
        text: str,
        attachments: Sequence[Attachment],
    ) -> ChatDeliveryRecord:
        log_extra = {"message_id": message.message_id, "channel": "chat", "recipient": chat_id}
        try:
            result = await self._call(
                "sendMessage",
                json={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"},
            )
        except (ProviderError, httpx.HTTPError) as exc:
            logger.error("[CHAT] %s failed: %s", chat_id, exc, extra=log_extra)
            return ChatDeliveryRecord(
                success=False,
                error=str(exc) or type(exc).__name__,
                files_sent=False,
            )

        sent, errors = await self._send_documents(chat_id, attachments)
        if errors:
            logger.warning("[CHAT] %s: %d attachment(s) not sent", chat_id, len(errors), extra=log_extra)
        else:
            logger.info("[CHAT] %s delivered", chat_id, extra=log_extra)

        return ChatDeliveryRecord(
            success=True,
            message_id=result.get("message_id"),
            files_sent=not errors,
            attachment_count=sent,
            file_errors=errors,
        )

    async def verify(self) -> bool:
        """Call getMe to confirm the bot token."""
        if not self.configured:
            logger.warning("[CHAT] Bot token missing; channel disabled")
            return False
        try:
            me = await self._call("getMe")
        except (ProviderError, httpx.HTTPError) as exc:
            logger.error("[CHAT] Bot check failed: %s", exc)
            return False
        logger.info("[CHAT] Bot @%s ready", me.get("username"))
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
