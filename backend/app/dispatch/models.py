"""
models.py — Shared data structures for the message dispatch system.

Defines:
    • Channel               — requested delivery channel enum
    • MessageStatus         — aggregate message verdict
    • HistoryAction         — audit trail action types
    • Recipient / Attachment / Message
    • ChannelDeliveryRecord — tagged per-(recipient, channel variant) outcome
    • RecipientResult       — what a sender returns for one recipient
    • DeliveryInfo          — mergeable map of every record for a message
    • StatusHistoryEntry    — immutable audit record

═══════════════════════════════════════════════════════════════════════════
DELIVERY INFO LAYOUT
═══════════════════════════════════════════════════════════════════════════

    {
      "a@b.com": {
        "email_acct1": {"kind": "email", "success": true,  ...},
        "email_acct2": {"kind": "email", "success": false, "error": "..."}
      },
      "123456": {
        "chat":   {"kind": "chat",   "success": true, "files_sent": true, ...},
        "social": {"kind": "social", "success": true, "attachment_count": 1}
      }
    }

Outer keys are resolved recipient addresses. Inner keys depend only on the
channel (and, for email, the SMTP account identifier), so records from
successive runs line up for merging.

═══════════════════════════════════════════════════════════════════════════
MERGE RULE
═══════════════════════════════════════════════════════════════════════════

A new record replaces the stored record for the same (recipient, key),
except that a failure never overwrites an earlier success. Merging a map
into itself changes nothing.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, Iterator, List, Optional, Tuple, Type

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Enumerations
# ═══════════════════════════════════════════════════════════════════════════

class Channel(str, Enum):
    """Delivery channels a message can be requested on."""
    EMAIL  = "email"    # two SMTP accounts
    CHAT   = "chat"     # chat-bot HTTP API
    SOCIAL = "social"   # social-graph community messaging API


class MessageStatus(str, Enum):
    PENDING = "pending"   # queued or in flight
    SENT    = "sent"      # at least one record of the last run succeeded
    FAILED  = "failed"    # no record of the last run succeeded


class HistoryAction(str, Enum):
    CREATE        = "create"
    RESEND        = "resend"
    STATUS_CHANGE = "status_change"


# ── Record keys ──

EMAIL_KEY_PREFIX = "email_"
EMAIL_FALLBACK_KEY = "email"   # email failures recorded before any account is tried
CHAT_KEY = "chat"
SOCIAL_KEY = "social"


def email_record_key(account: str) -> str:
    """DeliveryInfo key for one SMTP account."""
    return f"{EMAIL_KEY_PREFIX}{account}"


def parse_channels(values: Iterable[Any]) -> List[Channel]:
    """
    Normalise requested channel identifiers.

    Accepts enum members or strings (case/whitespace insensitive), drops
    unknown identifiers and duplicates, keeps first-seen order.
    """
    seen: List[Channel] = []
    for value in values:
        if isinstance(value, Channel):
            channel = value
        else:
            try:
                channel = Channel(str(value).strip().lower())
            except ValueError:
                logger.debug("Ignoring unknown channel %r", value)
                continue
        if channel not in seen:
            seen.append(channel)
    return seen


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Intake Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Recipient:
    """
    One recipient of a message.

    Either a reference to a stored contact (``contact_id`` set, carrying the
    contact's channel addresses) or a raw ``custom_address`` with no
    channel binding.
    """
    recipient_id: Optional[int] = None
    contact_id: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None
    chat_id: Optional[str] = None
    social_id: Optional[str] = None
    custom_address: Optional[str] = None

    @property
    def is_contact(self) -> bool:
        return self.contact_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "contact_id": self.contact_id,
            "name": self.name,
            "email": self.email,
            "chat_id": self.chat_id,
            "social_id": self.social_id,
            "custom_address": self.custom_address,
        }


@dataclass(frozen=True)
class Attachment:
    """A stored file associated with a message. Read-only for senders."""
    path: str
    original_name: str
    filename: str = ""
    attachment_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attachment_id": self.attachment_id,
            "filename": self.filename,
            "original_name": self.original_name,
            "path": self.path,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Channel Delivery Records
# ═══════════════════════════════════════════════════════════════════════════

_RECORD_TYPES: Dict[str, Type["ChannelDeliveryRecord"]] = {}


@dataclass
class ChannelDeliveryRecord:
    """
    Outcome of one (recipient, channel variant) attempt.

    Subclasses add the channel-specific payload and register themselves
    under their ``kind`` tag, which is written into the serialised form.
    """
    kind: ClassVar[str] = "generic"

    success: bool = False
    error: Optional[str] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        _RECORD_TYPES[cls.kind] = cls

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "kind": self.kind,
            "success": self.success,
            "delivered": self.success,
            "error": self.error,
        }
        for f in fields(self):
            if f.name not in d:
                d[f.name] = getattr(self, f.name)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any], key: Optional[str] = None) -> "ChannelDeliveryRecord":
        """Rebuild a record, dispatching on ``kind`` (or the key when absent)."""
        kind = data.get("kind") or _kind_from_key(key)
        record_cls = _RECORD_TYPES.get(kind, ChannelDeliveryRecord)
        known = {f.name for f in fields(record_cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["success"] = bool(data.get("success", False))
        return record_cls(**values)


_RECORD_TYPES[ChannelDeliveryRecord.kind] = ChannelDeliveryRecord


def _kind_from_key(key: Optional[str]) -> str:
    if not key:
        return ChannelDeliveryRecord.kind
    if key == EMAIL_FALLBACK_KEY or key.startswith(EMAIL_KEY_PREFIX):
        return "email"
    return key


@dataclass
class EmailDeliveryRecord(ChannelDeliveryRecord):
    kind: ClassVar[str] = "email"

    account: Optional[str] = None
    sender: Optional[str] = None
    message_id: Optional[str] = None
    response: Optional[str] = None


@dataclass
class ChatDeliveryRecord(ChannelDeliveryRecord):
    kind: ClassVar[str] = "chat"

    message_id: Optional[int] = None
    files_sent: bool = True
    attachment_count: int = 0
    file_errors: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.file_errors is None:
            self.file_errors = []


@dataclass
class SocialDeliveryRecord(ChannelDeliveryRecord):
    kind: ClassVar[str] = "social"

    message_id: Optional[int] = None
    group_id: Optional[int] = None
    files_sent: bool = False
    attachment_count: int = 0
    file_errors: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.file_errors is None:
            self.file_errors = []

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["file_errors"] = list(self.file_errors) or None
        return d


@dataclass
class RecipientResult:
    """What a channel sender reports for one recipient."""
    recipient: str
    success: bool
    records: Dict[str, ChannelDeliveryRecord] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient": self.recipient,
            "success": self.success,
            "error": self.error,
            "records": {k: r.to_dict() for k, r in self.records.items()},
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery Info
# ═══════════════════════════════════════════════════════════════════════════

def overlay(
    existing: Optional[ChannelDeliveryRecord],
    incoming: ChannelDeliveryRecord,
) -> ChannelDeliveryRecord:
    """Pick the record to keep for one (recipient, key) slot."""
    if existing is not None and existing.success and not incoming.success:
        return existing
    return incoming


class DeliveryInfo:
    """
    Accumulated map of recipient → record key → ChannelDeliveryRecord.

    Usage:
        info = DeliveryInfo.from_json(row.delivery_info)
        info.merge_results(results)
        row.delivery_info = info.to_json()
    """

    def __init__(
        self,
        entries: Optional[Dict[str, Dict[str, ChannelDeliveryRecord]]] = None,
    ) -> None:
        self._entries: Dict[str, Dict[str, ChannelDeliveryRecord]] = {}
        for recipient, records in (entries or {}).items():
            for key, record in records.items():
                self.record(recipient, key, record)

    # ── Mutation ──

    def record(self, recipient: str, key: str, record: ChannelDeliveryRecord) -> None:
        slot = self._entries.setdefault(str(recipient), {})
        slot[key] = overlay(slot.get(key), record)

    def merge(self, other: "DeliveryInfo") -> "DeliveryInfo":
        """Overlay every record of ``other`` onto this map (in place)."""
        for recipient, key, record in list(other.items()):
            self.record(recipient, key, record)
        return self

    def merge_results(self, results: Iterable[RecipientResult]) -> "DeliveryInfo":
        for result in results:
            for key, record in result.records.items():
                self.record(result.recipient, key, record)
        return self

    # ── Queries ──

    def items(self) -> Iterator[Tuple[str, str, ChannelDeliveryRecord]]:
        for recipient, records in self._entries.items():
            for key, record in records.items():
                yield recipient, key, record

    def get(self, recipient: str, key: str) -> Optional[ChannelDeliveryRecord]:
        return self._entries.get(str(recipient), {}).get(key)

    def recipients(self) -> List[str]:
        return list(self._entries)

    def keys_for(self, recipient: str) -> List[str]:
        return list(self._entries.get(str(recipient), {}))

    def has_success(self, key: str) -> bool:
        """True if any recipient has a successful record under ``key``."""
        return any(r.success for _, k, r in self.items() if k == key)

    def any_success(self) -> bool:
        return any(r.success for _, _, r in self.items())

    def is_empty(self) -> bool:
        return not self._entries

    # ── Serialisation ──

    def to_dict(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        return {
            recipient: {key: record.to_dict() for key, record in records.items()}
            for recipient, records in self._entries.items()
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DeliveryInfo":
        info = cls()
        for recipient, records in (data or {}).items():
            if not isinstance(records, dict):
                continue
            for key, raw in records.items():
                if isinstance(raw, dict):
                    info.record(recipient, key, ChannelDeliveryRecord.from_dict(raw, key))
        return info

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "DeliveryInfo":
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except ValueError:
            logger.error("Unreadable delivery info document, starting empty")
            return cls()
        return cls.from_dict(data if isinstance(data, dict) else {})

    def copy(self) -> "DeliveryInfo":
        return DeliveryInfo.from_dict(self.to_dict())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, recipient: object) -> bool:
        return str(recipient) in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DeliveryInfo):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"DeliveryInfo({self.to_dict()!r})"


# ═══════════════════════════════════════════════════════════════════════════
# Message & Audit Trail
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Message:
    """A broadcast message and its accumulated delivery state."""
    message_id: int
    body: str
    subject: Optional[str] = None
    channels: List[Channel] = field(default_factory=list)
    status: MessageStatus = MessageStatus.PENDING
    delivery_info: DeliveryInfo = field(default_factory=DeliveryInfo)
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.message_id,
            "subject": self.subject,
            "body": self.body,
            "channels": [c.value for c in self.channels],
            "status": self.status.value,
            "delivery_info": self.delivery_info.to_dict(),
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class StatusHistoryEntry:
    """Immutable audit record appended on every message state transition."""
    action: HistoryAction
    status: MessageStatus
    details: str = ""
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "action": self.action.value,
            "status": self.status.value,
            "details": self.details,
        }
