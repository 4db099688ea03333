"""
storage.py — Persistence port and its two implementations.

    StoragePort          protocol the orchestrator depends on
    SqlAlchemyStorage    async SQLAlchemy (SQLite by default)
    InMemoryStorage      dict-backed, for tests and local runs

Every storage failure surfaces as PersistenceError; a missing message
surfaces as NotFoundError. Status history is returned newest first.
"""

from __future__ import annotations

import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import NotFoundError, PersistenceError
from backend.app.dispatch.models import (
    Attachment,
    Channel,
    DeliveryInfo,
    HistoryAction,
    Message,
    MessageStatus,
    Recipient,
    StatusHistoryEntry,
    parse_channels,
)
from backend.app.dispatch.orm import (
    AttachmentRow,
    ContactRow,
    MessageRow,
    RecipientRow,
    StatusHistoryRow,
)

logger = logging.getLogger(__name__)


class StoragePort(Protocol):
    async def create_message(
        self, subject: Optional[str], body: str, channels: Sequence[Channel],
    ) -> Message: ...

    async def get_message(self, message_id: int) -> Optional[Message]: ...

    async def update_message_status(
        self,
        message_id: int,
        status: MessageStatus,
        delivery_info: Optional[DeliveryInfo] = None,
    ) -> None: ...

    async def add_recipient(
        self,
        message_id: int,
        *,
        contact_id: Optional[int] = None,
        custom_address: Optional[str] = None,
    ) -> Recipient: ...

    async def list_recipients(self, message_id: int) -> List[Recipient]: ...

    async def add_attachment(self, message_id: int, attachment: Attachment) -> Attachment: ...

    async def list_attachments(self, message_id: int) -> List[Attachment]: ...

    async def append_status_history(self, message_id: int, entry: StatusHistoryEntry) -> None: ...

    async def list_status_history(self, message_id: int) -> List[StatusHistoryEntry]: ...

    async def list_messages(self, limit: int = 50, offset: int = 0) -> List[Message]: ...

    async def add_contact(
        self,
        name: str,
        *,
        email: Optional[str] = None,
        chat_id: Optional[str] = None,
        social_id: Optional[str] = None,
    ) -> int: ...


def _join_channels(channels: Sequence[Channel]) -> str:
    return ",".join(c.value for c in parse_channels(channels))


def _split_channels(raw: Optional[str]) -> List[Channel]:
    return parse_channels(part for part in (raw or "").split(",") if part)


def _aware(value: Optional[datetime]) -> datetime:
    # SQLite hands back naive datetimes
    if value is None:
        return datetime.now(timezone.utc)
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# SQLAlchemy
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlchemyStorage:
    """
    StoragePort over an async SQLAlchemy session factory.

    One short-lived session per call. The orchestrator never holds a
    transaction across provider calls.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error("Storage operation %s failed: %s", operation, exc)
                raise PersistenceError(operation, str(exc)) from exc

    # ── Conversions ──

    @staticmethod
    def _to_message(row: MessageRow) -> Message:
        return Message(
            message_id=row.id,
            subject=row.subject,
            body=row.body,
            channels=_split_channels(row.channels),
            status=MessageStatus(row.status),
            delivery_info=DeliveryInfo.from_json(row.delivery_info),
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _to_recipient(row: RecipientRow) -> Recipient:
        contact = row.contact
        return Recipient(
            recipient_id=row.id,
            contact_id=row.contact_id,
            name=contact.name if contact else None,
            email=contact.email if contact else None,
            chat_id=contact.chat_id if contact else None,
            social_id=contact.social_id if contact else None,
            custom_address=row.custom_address,
        )

    @staticmethod
    def _to_attachment(row: AttachmentRow) -> Attachment:
        return Attachment(
            attachment_id=row.id,
            filename=row.filename,
            original_name=row.original_name,
            path=row.path,
        )

    # ── Messages ──

    async def create_message(
        self, subject: Optional[str], body: str, channels: Sequence[Channel],
    ) -> Message:
        async with self._session("create_message") as session:
            row = MessageRow(
                subject=subject,
                body=body,
                channels=_join_channels(channels),
                status=MessageStatus.PENDING.value,
                delivery_info=DeliveryInfo().to_json(),
            )
            session.add(row)
            await session.flush()
            return self._to_message(row)

    async def get_message(self, message_id: int) -> Optional[Message]:
        async with self._session("get_message") as session:
            row = await session.get(MessageRow, message_id)
            return self._to_message(row) if row else None

    async def update_message_status(
        self,
        message_id: int,
        status: MessageStatus,
        delivery_info: Optional[DeliveryInfo] = None,
    ) -> None:
        async with self._session("update_message_status") as session:
            row = await session.get(MessageRow, message_id)
            if row is None:
                raise NotFoundError("Message", id=message_id)
            row.status = status.value
            if delivery_info is not None:
                row.delivery_info = delivery_info.to_json()

    async def list_messages(self, limit: int = 50, offset: int = 0) -> List[Message]:
        async with self._session("list_messages") as session:
            result = await session.execute(
                select(MessageRow)
                .order_by(MessageRow.created_at.desc(), MessageRow.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [self._to_message(row) for row in result.scalars()]

    # ── Recipients & attachments ──

    async def add_recipient(
        self,
        message_id: int,
        *,
        contact_id: Optional[int] = None,
        custom_address: Optional[str] = None,
    ) -> Recipient:
        async with self._session("add_recipient") as session:
            row = RecipientRow(
                message_id=message_id,
                contact_id=contact_id,
                custom_address=custom_address,
            )
            session.add(row)
            await session.flush()
            row.contact = await session.get(ContactRow, contact_id) if contact_id else None
            return self._to_recipient(row)

    async def list_recipients(self, message_id: int) -> List[Recipient]:
        async with self._session("list_recipients") as session:
            result = await session.execute(
                select(RecipientRow)
                .where(RecipientRow.message_id == message_id)
                .order_by(RecipientRow.id)
            )
            return [self._to_recipient(row) for row in result.scalars()]

    async def add_attachment(self, message_id: int, attachment: Attachment) -> Attachment:
        async with self._session("add_attachment") as session:
            row = AttachmentRow(
                message_id=message_id,
                filename=attachment.filename or attachment.original_name,
                original_name=attachment.original_name,
                path=attachment.path,
            )
            session.add(row)
            await session.flush()
            return self._to_attachment(row)

    async def list_attachments(self, message_id: int) -> List[Attachment]:
        async with self._session("list_attachments") as session:
            result = await session.execute(
                select(AttachmentRow)
                .where(AttachmentRow.message_id == message_id)
                .order_by(AttachmentRow.id)
            )
            return [self._to_attachment(row) for row in result.scalars()]

    # ── Audit trail ──

    async def append_status_history(self, message_id: int, entry: StatusHistoryEntry) -> None:
        async with self._session("append_status_history") as session:
            session.add(StatusHistoryRow(
                message_id=message_id,
                action=entry.action.value,
                status=entry.status.value,
                details=entry.details,
                timestamp=entry.timestamp,
            ))

    async def list_status_history(self, message_id: int) -> List[StatusHistoryEntry]:
        async with self._session("list_status_history") as session:
            result = await session.execute(
                select(StatusHistoryRow)
                .where(StatusHistoryRow.message_id == message_id)
                .order_by(StatusHistoryRow.timestamp.desc(), StatusHistoryRow.id.desc())
            )
            return [
                StatusHistoryEntry(
                    action=HistoryAction(row.action),
                    status=MessageStatus(row.status),
                    details=row.details or "",
                    timestamp=_aware(row.timestamp),
                )
                for row in result.scalars()
            ]

    # ── Contacts ──

    async def add_contact(
        self,
        name: str,
        *,
        email: Optional[str] = None,
        chat_id: Optional[str] = None,
        social_id: Optional[str] = None,
    ) -> int:
        async with self._session("add_contact") as session:
            row = ContactRow(name=name, email=email, chat_id=chat_id, social_id=social_id)
            session.add(row)
            await session.flush()
            return row.id


# ═══════════════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryStorage:
    """StoragePort kept in dictionaries. Returned objects are copies."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._messages: Dict[int, Message] = {}
        self._recipients: Dict[int, List[Tuple[int, Optional[int], Optional[str]]]] = {}
        self._attachments: Dict[int, List[Attachment]] = {}
        self._history: Dict[int, List[StatusHistoryEntry]] = {}
        self._contacts: Dict[int, Recipient] = {}

    def _copy(self, message: Message) -> Message:
        return replace(
            message,
            channels=list(message.channels),
            delivery_info=message.delivery_info.copy(),
        )

    async def create_message(
        self, subject: Optional[str], body: str, channels: Sequence[Channel],
    ) -> Message:
        message = Message(
            message_id=next(self._ids),
            subject=subject,
            body=body,
            channels=parse_channels(channels),
        )
        self._messages[message.message_id] = message
        return self._copy(message)

    async def get_message(self, message_id: int) -> Optional[Message]:
        message = self._messages.get(message_id)
        return self._copy(message) if message else None

    async def update_message_status(
        self,
        message_id: int,
        status: MessageStatus,
        delivery_info: Optional[DeliveryInfo] = None,
    ) -> None:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFoundError("Message", id=message_id)
        message.status = status
        if delivery_info is not None:
            message.delivery_info = delivery_info.copy()

    async def list_messages(self, limit: int = 50, offset: int = 0) -> List[Message]:
        ordered = sorted(
            self._messages.values(),
            key=lambda m: (m.created_at, m.message_id),
            reverse=True,
        )
        return [self._copy(m) for m in ordered[offset: offset + limit]]

    async def add_recipient(
        self,
        message_id: int,
        *,
        contact_id: Optional[int] = None,
        custom_address: Optional[str] = None,
    ) -> Recipient:
        recipient_id = next(self._ids)
        self._recipients.setdefault(message_id, []).append((recipient_id, contact_id, custom_address))
        return self._build_recipient(recipient_id, contact_id, custom_address)

    def _build_recipient(
        self,
        recipient_id: int,
        contact_id: Optional[int],
        custom_address: Optional[str],
    ) -> Recipient:
        contact = self._contacts.get(contact_id) if contact_id is not None else None
        if contact is None:
            return Recipient(recipient_id=recipient_id, contact_id=contact_id, custom_address=custom_address)
        return replace(contact, recipient_id=recipient_id, custom_address=custom_address)

    async def list_recipients(self, message_id: int) -> List[Recipient]:
        return [
            self._build_recipient(*entry)
            for entry in self._recipients.get(message_id, [])
        ]

    async def add_attachment(self, message_id: int, attachment: Attachment) -> Attachment:
        stored = replace(
            attachment,
            attachment_id=next(self._ids),
            filename=attachment.filename or attachment.original_name,
        )
        self._attachments.setdefault(message_id, []).append(stored)
        return stored

    async def list_attachments(self, message_id: int) -> List[Attachment]:
        return list(self._attachments.get(message_id, []))

    async def append_status_history(self, message_id: int, entry: StatusHistoryEntry) -> None:
        self._history.setdefault(message_id, []).append(entry)

    async def list_status_history(self, message_id: int) -> List[StatusHistoryEntry]:
        return list(reversed(self._history.get(message_id, [])))

    async def add_contact(
        self,
        name: str,
        *,
        email: Optional[str] = None,
        chat_id: Optional[str] = None,
        social_id: Optional[str] = None,
    ) -> int:
        contact_id = next(self._ids)
        self._contacts[contact_id] = Recipient(
            contact_id=contact_id,
            name=name,
            email=email,
            chat_id=chat_id,
            social_id=social_id,
        )
        return contact_id
