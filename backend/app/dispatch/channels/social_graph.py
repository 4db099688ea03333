"""
social_graph.py — Community messaging via the social-graph HTTP API.

Delivery mechanism:
    • groups.getById once per run (community identity, sender-level)
    • per attachment: docs.getMessagesUploadServer → POST file → docs.save
    • messages.send with the text, attachment tokens and a random_id
    • 1-unit pause between uploads and after every recipient

═══════════════════════════════════════════════════════════════════════════
UPLOAD STRATEGIES
═══════════════════════════════════════════════════════════════════════════

    Primary     file streamed from disk, strict JSON response
    Secondary   file buffered in memory, response parsed tolerantly
                (JSON body or a JSON document returned as text)

The secondary strategy runs only when the primary one raised. When both
fail the error goes to ``file_errors`` and the message is still sent.

═══════════════════════════════════════════════════════════════════════════
SUCCESS RULE
═══════════════════════════════════════════════════════════════════════════

A recipient succeeds when messages.send returned a ``response``. An API
``error`` or a body without ``response`` fails that recipient only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from backend.app.core.errors import ProviderError, RecipientValidationError
from backend.app.dispatch.channel_config import SocialGraphConfig
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.models import (
    SOCIAL_KEY,
    Attachment,
    Channel,
    Message,
    RecipientResult,
    SocialDeliveryRecord,
)
from backend.app.dispatch.recipients import ResolvedRecipient, normalize_social_id
from backend.app.dispatch.retry import Pause

logger = logging.getLogger(__name__)

RECIPIENT_PAUSE_UNITS = 1
UPLOAD_PAUSE_UNITS = 1
MESSAGE_MARKER = "📌"


def format_text(message: Message) -> str:
    if message.subject:
        return f"{MESSAGE_MARKER} {message.subject}\n\n{message.body}"
    return message.body


def random_token() -> int:
    """Idempotency token for messages.send (positive int32)."""
    return uuid.uuid4().int & 0x7FFFFFFF


def _parse_upload_body(response: httpx.Response) -> Dict[str, Any]:
    """Tolerant parser for the secondary upload strategy."""
    try:
        data = response.json()
    except ValueError:
        data = response.text
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            raise ProviderError("social", f"Unreadable upload response: {data[:200]}")
    if not isinstance(data, dict):
        raise ProviderError("social", "Unexpected upload response")
    return data


class SocialGraphSender(ChannelSender):
    channel = Channel.SOCIAL

    def __init__(
        self,
        config: SocialGraphConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        token_factory: Callable[[], int] = random_token,
        time_unit: float = 1.0,
        pause: Pause = asyncio.sleep,
    ) -> None:
        super().__init__(time_unit=time_unit, pause=pause)
        self.config = config
        self._token_factory = token_factory
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.request_timeout,
        )

    @property
    def configured(self) -> bool:
        return self.config.configured

    # ── API plumbing ──

    async def _api(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Call one API method and unwrap ``response``."""
        query = {
            **(params or {}),
            "access_token": self.config.access_token,
            "v": self.config.api_version,
        }
        response = await self._client.post(method, data=query)
        try:
            payload = response.json()
        except ValueError:
            raise ProviderError("social", f"HTTP {response.status_code}", method=method)

        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            text = error.get("error_msg") if isinstance(error, dict) else str(error)
            raise ProviderError(
                "social", text or "Unknown API error",
                method=method,
                error_code=error.get("error_code") if isinstance(error, dict) else None,
            )
        if not isinstance(payload, dict) or "response" not in payload:
            raise ProviderError("social", f"Malformed response from {method}", method=method)
        return payload["response"]

    async def get_group_info(self) -> Dict[str, Any]:
        """Community the access token belongs to."""
        response = await self._api(
            "groups.getById",
            {"fields": "name,screen_name,is_messages_allowed"},
        )
        groups = response.get("groups") if isinstance(response, dict) else response
        if not groups:
            raise ProviderError("social", "Community not found for access token")
        return groups[0]

    # ── Uploads ──

    async def _upload_url(self, user_id: int) -> str:
        response = await self._api(
            "docs.getMessagesUploadServer",
            {"type": "doc", "peer_id": user_id},
        )
        url = response.get("upload_url") if isinstance(response, dict) else None
        if not url:
            raise ProviderError("social", "No upload_url in response")
        return url

    async def _save(self, file_token: str, title: str) -> str:
        response = await self._api("docs.save", {"file": file_token, "title": title})
        if isinstance(response, list):
            doc = response[0] if response else {}
        else:
            doc = response.get("doc", response)
        if not doc or "owner_id" not in doc or "id" not in doc:
            raise ProviderError("social", "docs.save returned no document")
        return f"doc{doc['owner_id']}_{doc['id']}"

    async def upload_primary(self, attachment: Attachment, user_id: int) -> str:
        url = await self._upload_url(user_id)
        path = Path(attachment.path)
        with path.open("rb") as fh:
            response = await self._client.post(
                url,
                files={"file": (attachment.original_name, fh, "application/octet-stream")},
                timeout=self.config.upload_timeout,
            )
        response.raise_for_status()
        data = response.json()
        if data.get("error"):
            raise ProviderError("social", f"Upload rejected: {data['error']}")
        if not data.get("file"):
            raise ProviderError("social", "Upload response has no file token")
        return await self._save(data["file"], attachment.original_name)

    async def upload_secondary(self, attachment: Attachment, user_id: int) -> str:
        url = await self._upload_url(user_id)
        content = await asyncio.to_thread(Path(attachment.path).read_bytes)
        response = await self._client.post(
            url,
            files={"file": (attachment.original_name, content)},
            timeout=self.config.upload_timeout,
        )
        data = _parse_upload_body(response)
        if not data.get("file"):
            raise ProviderError(
                "social",
                f"Upload failed: {data.get('error') or 'no file token'}",
                status_code=response.status_code,
            )
        return await self._save(data["file"], attachment.original_name)

    async def upload_attachment(self, attachment: Attachment, user_id: int) -> str:
        """Upload with the primary strategy, falling back once."""
        try:
            return await self.upload_primary(attachment, user_id)
        except Exception as exc:
            logger.warning(
                "[SOCIAL] Primary upload of %s failed (%s), trying buffered upload",
                attachment.original_name, exc,
            )
        return await self.upload_secondary(attachment, user_id)

    async def _upload_all(
        self,
        attachments: Sequence[Attachment],
        user_id: int,
    ) -> Tuple[List[str], List[str]]:
        tokens: List[str] = []
        errors: List[str] = []
        for index, attachment in enumerate(attachments):
            if index:
                await self.pause_units(UPLOAD_PAUSE_UNITS)
            try:
                tokens.append(await self.upload_attachment(attachment, user_id))
            except Exception as exc:
                logger.error("[SOCIAL] %s not uploaded: %s", attachment.original_name, exc)
                errors.append(f"{attachment.original_name}: {exc}")
        return tokens, errors

    # ── Sender contract ──

    async def send(
        self,
        message: Message,
        recipients: Sequence[ResolvedRecipient],
        attachments: Sequence[Attachment],
    ) -> List[RecipientResult]:
        if not recipients:
            return []

        group = await self.get_group_info()
        group_id = group.get("id")
        text = format_text(message)
        logger.info(
            "[SOCIAL] Message %s → %d recipient(s) via community %s, %d attachment(s)",
            message.message_id, len(recipients), group_id, len(attachments),
        )

        results: List[RecipientResult] = []
        for resolved in recipients:
            record = await self._deliver(message, resolved, text, attachments, group_id)
            results.append(RecipientResult(
                recipient=resolved.key,
                success=record.success,
                records={SOCIAL_KEY: record},
                error=record.error,
            ))
            await self.pause_units(RECIPIENT_PAUSE_UNITS)
        return results

    async def _deliver(
        self,
        message: Message,
        resolved: ResolvedRecipient,
        text: str,
        attachments: Sequence[Attachment],
        group_id: Optional[int],
    ) -> SocialDeliveryRecord:
        key = resolved.key
        log_extra = {"message_id": message.message_id, "channel": "social", "recipient": key}
        try:
            user_id = normalize_social_id(resolved.address)
            if user_id is None:
                raise RecipientValidationError(
                    key, Channel.SOCIAL.value,
                    f"Invalid social id: {key}. Must be numeric.",
                )

            tokens, errors = await self._upload_all(attachments, user_id)
            params: Dict[str, Any] = {
                "user_id": user_id,
                "message": text,
                "random_id": self._token_factory(),
            }
            if tokens:
                params["attachment"] = ",".join(tokens)
            sent_id = await self._api("messages.send", params)
        except (ProviderError, RecipientValidationError, httpx.HTTPError) as exc:
            logger.error("[SOCIAL] %s failed: %s", key, exc, extra=log_extra)
            return SocialDeliveryRecord(success=False, error=str(exc) or type(exc).__name__, group_id=group_id)

        logger.info("[SOCIAL] %s delivered (%d attachment(s))", key, len(tokens), extra=log_extra)
        return SocialDeliveryRecord(
            success=True,
            message_id=sent_id if isinstance(sent_id, int) else None,
            group_id=group_id,
            files_sent=bool(tokens),
            attachment_count=len(tokens),
            file_errors=errors,
        )

    async def verify(self) -> bool:
        """Confirm the community token and that community messages are on."""
        if not self.configured:
            logger.warning("[SOCIAL] Access token missing; channel disabled")
            return False
        try:
            group = await self.get_group_info()
        except (ProviderError, httpx.HTTPError) as exc:
            logger.error("[SOCIAL] Community check failed: %s", exc)
            return False
        logger.info("[SOCIAL] Community %s (%s) ready", group.get("name"), group.get("id"))
        if not group.get("is_messages_allowed", True):
            logger.warning("[SOCIAL] Community messages are disabled for %s", group.get("name"))
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
