"""
recipients.py — Per-channel address resolution.

A recipient is reachable on a channel only if an address of the right
shape can be derived for it:

    Channel   Stored field   Custom address accepted when
    ───────   ────────────   ─────────────────────────────────────────
    email     email          contains "@"
    chat      chat_id        starts with "@" (handle) or is all digits
    social    social_id      all digits, or "id<digits>"; social ids are
                             always normalised to an int

Email addresses are not validated beyond this; a malformed stored address
becomes a per-recipient failure inside the email sender.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from backend.app.dispatch.models import Channel, Recipient

logger = logging.getLogger(__name__)

Address = Union[str, int]


@dataclass(frozen=True)
class ResolvedRecipient:
    """A recipient paired with its address on one channel."""
    recipient: Recipient
    address: Address

    @property
    def key(self) -> str:
        """Recipient identity used as the outer DeliveryInfo key."""
        return str(self.address)


def normalize_social_id(value: object) -> Optional[int]:
    """
    Numeric social-graph user id from a raw value, or None.

    >>> normalize_social_id("id42")
    42
    >>> normalize_social_id("durov") is None
    True
    """
    if value is None:
        return None
    text = str(value).strip()
    if text.startswith("id"):
        text = text[2:]
    if text.isdigit():
        return int(text)
    return None


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def resolve_address(recipient: Recipient, channel: Channel) -> Optional[Address]:
    """Channel-specific address for a recipient, or None if not applicable."""
    custom = _clean(recipient.custom_address)

    if channel == Channel.EMAIL:
        email = _clean(recipient.email)
        if email:
            return email
        if custom and "@" in custom:
            return custom
        return None

    if channel == Channel.CHAT:
        chat_id = _clean(recipient.chat_id)
        if chat_id:
            return chat_id
        if custom and (custom.startswith("@") or custom.isdigit()):
            return custom
        return None

    if channel == Channel.SOCIAL:
        stored = _clean(recipient.social_id)
        return normalize_social_id(stored if stored else custom)

    return None


def resolve_recipients(
    recipients: Iterable[Recipient],
    channel: Channel,
) -> List[ResolvedRecipient]:
    """Reachable subset of ``recipients`` on ``channel``, in input order."""
    resolved: List[ResolvedRecipient] = []
    skipped = 0
    for recipient in recipients:
        address = resolve_address(recipient, channel)
        if address is None:
            skipped += 1
            continue
        resolved.append(ResolvedRecipient(recipient=recipient, address=address))

    if skipped:
        logger.debug(
            "Channel %s: %d recipient(s) without a usable address",
            channel.value, skipped,
        )
    return resolved
