"""
ORM tables for messages, recipients, attachments and the audit trail.

    contacts                 address book (read-only for dispatch)
    messages                 one row per authored message
    message_recipients       contact reference or raw custom address
    attachments              stored files belonging to a message
    message_status_history   append-only audit trail

``messages.channels`` holds a comma-separated channel list and
``messages.delivery_info`` the JSON form of DeliveryInfo.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContactRow(Base):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    social_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    body: Mapped[str] = mapped_column(Text)
    channels: Mapped[str] = mapped_column(String(100), default="")
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    delivery_info: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    recipients: Mapped[List["RecipientRow"]] = relationship(
        back_populates="message", cascade="all, delete-orphan",
    )
    attachments: Mapped[List["AttachmentRow"]] = relationship(
        back_populates="message", cascade="all, delete-orphan",
    )


class RecipientRow(Base):
    __tablename__ = "message_recipients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), index=True)
    contact_id: Mapped[Optional[int]] = mapped_column(ForeignKey("contacts.id"), nullable=True)
    custom_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    message: Mapped[MessageRow] = relationship(back_populates="recipients")
    contact: Mapped[Optional[ContactRow]] = relationship(lazy="joined")


class AttachmentRow(Base):
    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), index=True)
    filename: Mapped[str] = mapped_column(String(255), default="")
    original_name: Mapped[str] = mapped_column(String(255))
    path: Mapped[str] = mapped_column(String(1024))

    message: Mapped[MessageRow] = relationship(back_populates="attachments")


class StatusHistoryRow(Base):
    __tablename__ = "message_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), index=True)
    action: Mapped[str] = mapped_column(String(30))
    status: Mapped[str] = mapped_column(String(20))
    details: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
