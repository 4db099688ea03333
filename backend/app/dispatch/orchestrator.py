"""
orchestrator.py — Dispatch orchestration and delivery-status reconciliation.

This is the central coordinator that:
    1. Filters the requested channels down to the configured ones
    2. Persists the message, its attachments and recipients
    3. Resolves recipients per channel and hands them to the channel sender
    4. Merges the run's records into the accumulated DeliveryInfo
    5. Derives the run verdict (sent / failed) and appends to the audit trail
    6. Prepares resends that re-enter the same run path

═══════════════════════════════════════════════════════════════════════════
RUN FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  load message,      │
    │  recipients, files  │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐   for each channel, sequentially:
    │  resolve → send     │     resolve_recipients(recipients, channel)
    │                     │     sender.send(message, resolved, files)
    └─────────┬───────────┘   a sender that raises is logged and skipped
              │
              ▼
    ┌─────────────────────┐
    │  merge + verdict    │   stored DeliveryInfo ⊕ this run's records
    │                     │   sent iff any record of THIS run succeeded
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  persist + history  │   status, DeliveryInfo, status_change entry
    └─────────────────────┘

Storage errors are never swallowed here; they propagate to the job manager,
which records the run as failed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from backend.app.core.errors import ConfigurationError, NotFoundError, ValidationError
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.models import (
    Attachment,
    Channel,
    HistoryAction,
    Message,
    MessageStatus,
    RecipientResult,
    StatusHistoryEntry,
    parse_channels,
)
from backend.app.dispatch.recipients import resolve_recipients
from backend.app.dispatch.status import (
    channel_summary,
    is_fully_delivered,
    run_status,
)
from backend.app.dispatch.storage import StoragePort

logger = logging.getLogger(__name__)


@dataclass
class DispatchRequest:
    """Everything needed to author and persist one message."""
    body: str
    subject: Optional[str] = None
    channels: List[Any] = field(default_factory=list)
    contact_ids: List[int] = field(default_factory=list)
    custom_addresses: List[str] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)


@dataclass
class RunReport:
    """Outcome of one dispatch run."""
    message_id: int
    status: MessageStatus
    channels: List[Channel]
    results: Dict[Channel, List[RecipientResult]] = field(default_factory=dict)
    skipped_channels: Dict[Channel, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    @property
    def delivered(self) -> int:
        return sum(1 for rs in self.results.values() for r in rs if r.success)

    @property
    def attempted(self) -> int:
        return sum(len(rs) for rs in self.results.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "status": self.status.value,
            "channels": [c.value for c in self.channels],
            "delivered": self.delivered,
            "attempted": self.attempted,
            "skipped_channels": {c.value: why for c, why in self.skipped_channels.items()},
            "duration_ms": round(self.duration_ms, 1),
        }


class DispatchOrchestrator:
    """
    Usage:
        orchestrator = DispatchOrchestrator(storage, build_senders(config),
                                            email_accounts=["acct1", "acct2"])
        message_id, channels = await orchestrator.submit(request)
        report = await orchestrator.run(message_id, channels)
    """

    def __init__(
        self,
        storage: StoragePort,
        senders: Mapping[Channel, ChannelSender],
        *,
        email_accounts: Sequence[str] = ("acct1", "acct2"),
        resend_includes_attachments: bool = False,
        upload_dir: Optional[str] = None,
    ) -> None:
        self.storage = storage
        self.senders = dict(senders)
        self.email_accounts = list(email_accounts)
        self.resend_includes_attachments = resend_includes_attachments
        self.upload_dir = Path(upload_dir).resolve() if upload_dir is not None else None

    # ─────────────────────────────────────────────────────────────────────
    # Channel filtering
    # ─────────────────────────────────────────────────────────────────────

    def available_channels(self, requested: Iterable[Any]) -> List[Channel]:
        """Requested channels (deduplicated) whose sender is configured."""
        available = []
        for channel in parse_channels(requested):
            sender = self.senders.get(channel)
            if sender is not None and sender.configured:
                available.append(channel)
        return available

    def _require_channels(self, requested: Iterable[Any]) -> List[Channel]:
        requested = list(requested)
        channels = self.available_channels(requested)
        if not channels:
            raise ConfigurationError(
                "No delivery channel available: none of the requested channels is configured",
                requested=[getattr(c, "value", c) for c in requested],
            )
        return channels

    def _checked_attachments(self, attachments: Sequence[Attachment]) -> List[Attachment]:
        """
        Attachments with their paths resolved inside the upload directory.

        Relative paths are taken relative to the upload directory. Anything
        resolving outside it, or not naming an existing file, is rejected.
        Without an upload directory no attachment is accepted.
        """
        if not attachments:
            return []
        if self.upload_dir is None:
            raise ValidationError(
                "Attachments are not accepted: no upload directory is configured",
                field="attachments",
            )

        checked = []
        for index, attachment in enumerate(attachments):
            path = Path(attachment.path)
            if not path.is_absolute():
                path = self.upload_dir / path
            path = path.resolve()
            if not path.is_relative_to(self.upload_dir) or not path.is_file():
                logger.warning(
                    "[DISPATCH] Rejected attachment path %r (outside %s or missing)",
                    attachment.path, self.upload_dir,
                )
                raise ValidationError(
                    f"Attachment {attachment.original_name!r} is not a stored upload",
                    field=f"attachments[{index}].path",
                )
            checked.append(replace(attachment, path=str(path)))
        return checked

    # ─────────────────────────────────────────────────────────────────────
    # Submission
    # ─────────────────────────────────────────────────────────────────────

    async def submit(self, request: DispatchRequest) -> Tuple[int, List[Channel]]:
        """
        Persist a new message and return ``(message_id, channels)``.

        Raises ConfigurationError before anything is written when none of
        the requested channels is configured, and ValidationError when an
        attachment path is not a file inside the upload directory.
        """
        channels = self._require_channels(request.channels)
        attachments = self._checked_attachments(request.attachments)

        message = await self.storage.create_message(request.subject, request.body, channels)
        message_id = message.message_id
        await self.storage.append_status_history(message_id, StatusHistoryEntry(
            action=HistoryAction.CREATE,
            status=MessageStatus.PENDING,
            details=f"Message created for channels: {', '.join(c.value for c in channels)}",
        ))

        for attachment in attachments:
            await self.storage.add_attachment(message_id, attachment)
        for contact_id in request.contact_ids:
            await self.storage.add_recipient(message_id, contact_id=contact_id)
        for address in request.custom_addresses:
            address = address.strip()
            if address:
                await self.storage.add_recipient(message_id, custom_address=address)

        logger.info(
            "[DISPATCH] Message %d stored: %d contact(s), %d custom address(es), %d attachment(s)",
            message_id, len(request.contact_ids), len(request.custom_addresses),
            len(attachments),
            extra={"message_id": message_id},
        )
        return message_id, channels

    # ─────────────────────────────────────────────────────────────────────
    # Dispatch run
    # ─────────────────────────────────────────────────────────────────────

    async def _load(self, message_id: int) -> Message:
        message = await self.storage.get_message(message_id)
        if message is None:
            raise NotFoundError("Message", id=message_id)
        return message

    async def run(
        self,
        message_id: int,
        channels: Iterable[Any],
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> RunReport:
        """
        Deliver a stored message on ``channels`` and persist the outcome.

        Parameters
        ----------
        message_id : int
        channels : iterable of Channel or str
            Channels to use for this run, in order.
        attachments : sequence of Attachment, optional
            Files to send; ``None`` means the message's stored attachments,
            an empty list means text only.

        Returns
        -------
        RunReport
        """
        start = time.monotonic()
        message = await self._load(message_id)
        recipients = await self.storage.list_recipients(message_id)
        if attachments is None:
            attachments = await self.storage.list_attachments(message_id)

        report = RunReport(
            message_id=message_id,
            status=MessageStatus.PENDING,
            channels=parse_channels(channels),
        )
        run_results: List[RecipientResult] = []

        for channel in report.channels:
            sender = self.senders.get(channel)
            if sender is None:
                report.skipped_channels[channel] = "no sender"
                continue

            resolved = resolve_recipients(recipients, channel)
            if not resolved:
                logger.info(
                    "[DISPATCH] Message %d: no recipients reachable on %s",
                    message_id, channel.value,
                    extra={"message_id": message_id, "channel": channel.value},
                )
                report.skipped_channels[channel] = "no reachable recipients"
                continue

            try:
                results = await sender.send(message, resolved, attachments)
            except Exception as exc:
                logger.error(
                    "[DISPATCH] Message %d: channel %s aborted: %s",
                    message_id, channel.value, exc,
                    extra={"message_id": message_id, "channel": channel.value},
                )
                report.skipped_channels[channel] = str(exc) or type(exc).__name__
                continue

            report.results[channel] = results
            run_results.extend(results)

        # Re-read so the merge starts from the latest stored state
        current = await self._load(message_id)
        merged = current.delivery_info.copy().merge_results(run_results)
        report.status = run_status(run_results)
        report.duration_ms = (time.monotonic() - start) * 1000

        await self.storage.update_message_status(message_id, report.status, merged)
        await self.storage.append_status_history(message_id, StatusHistoryEntry(
            action=HistoryAction.STATUS_CHANGE,
            status=report.status,
            details=(
                f"Run finished: {report.delivered}/{report.attempted} deliveries succeeded "
                f"via {', '.join(c.value for c in report.channels) or 'no channel'}"
            ),
        ))

        logger.info(
            "[DISPATCH] Message %d → %s (%d/%d delivered)",
            message_id, report.status.value, report.delivered, report.attempted,
            extra={
                "message_id": message_id,
                "status": report.status.value,
                "duration_ms": round(report.duration_ms, 1),
            },
        )
        return report

    async def record_failure(self, message_id: int, error: str) -> None:
        """Mark a run that crashed as failed, keeping the stored DeliveryInfo."""
        await self.storage.update_message_status(message_id, MessageStatus.FAILED)
        await self.storage.append_status_history(message_id, StatusHistoryEntry(
            action=HistoryAction.STATUS_CHANGE,
            status=MessageStatus.FAILED,
            details=f"Dispatch run failed: {error}",
        ))

    # ─────────────────────────────────────────────────────────────────────
    # Resend
    # ─────────────────────────────────────────────────────────────────────

    async def prepare_resend(self, message_id: int) -> List[Channel]:
        """
        Reset a stored message to pending and return the channels to rerun.

        Earlier delivery records are kept; the next run merges into them.
        """
        message = await self._load(message_id)
        channels = self._require_channels(message.channels)

        await self.storage.append_status_history(message_id, StatusHistoryEntry(
            action=HistoryAction.RESEND,
            status=MessageStatus.PENDING,
            details=f"Resend requested for channels: {', '.join(c.value for c in channels)}",
        ))
        await self.storage.update_message_status(message_id, MessageStatus.PENDING)
        logger.info(
            "[DISPATCH] Message %d queued for resend on %s",
            message_id, [c.value for c in channels],
            extra={"message_id": message_id},
        )
        return channels

    def resend_attachments(self) -> Optional[List[Attachment]]:
        """Attachment argument for a resend run (``[]`` = text only)."""
        return None if self.resend_includes_attachments else []

    # ─────────────────────────────────────────────────────────────────────
    # Reporting
    # ─────────────────────────────────────────────────────────────────────

    def _summary(self, message: Message) -> Dict[str, Any]:
        return {
            "channel_summary": channel_summary(
                message.delivery_info, message.channels, self.email_accounts,
            ),
            "fully_delivered": is_fully_delivered(
                message.channels, message.delivery_info, self.email_accounts,
            ),
        }

    async def list_messages(self, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        messages = await self.storage.list_messages(limit=limit, offset=offset)
        return [{**m.to_dict(), **self._summary(m)} for m in messages]

    async def history(self, message_id: int) -> List[StatusHistoryEntry]:
        await self._load(message_id)
        return await self.storage.list_status_history(message_id)

    async def message_report(self, message_id: int) -> Dict[str, Any]:
        """Message, delivery records, per-key summary and audit trail."""
        message = await self._load(message_id)
        recipients = await self.storage.list_recipients(message_id)
        attachments = await self.storage.list_attachments(message_id)
        history = await self.storage.list_status_history(message_id)
        return {
            **message.to_dict(),
            **self._summary(message),
            "recipients": [r.to_dict() for r in recipients],
            "attachments": [a.to_dict() for a in attachments],
            "history": [h.to_dict() for h in history],
        }
