"""
status.py — Verdicts derived from delivery records.

    run_status(results)          → MessageStatus for one dispatch run
    channel_summary(info, ...)   → per record-key success flags for display
    is_fully_delivered(...)      → drives "view history" vs "resend"

The run verdict only looks at the records produced by that run. A message
requested on several channels is ``sent`` as soon as a single recipient on
a single channel succeeded; ``is_fully_delivered`` is the stricter check
used to decide whether a resend is still worth offering.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence

from backend.app.dispatch.models import (
    CHAT_KEY,
    SOCIAL_KEY,
    Channel,
    DeliveryInfo,
    MessageStatus,
    RecipientResult,
    email_record_key,
)


def has_any_success(results: Iterable[RecipientResult]) -> bool:
    """OR over every record's ``success`` flag."""
    return any(
        record.success
        for result in results
        for record in result.records.values()
    )


def run_status(results: Iterable[RecipientResult]) -> MessageStatus:
    return MessageStatus.SENT if has_any_success(results) else MessageStatus.FAILED


def record_keys_for(channel: Channel, email_accounts: Sequence[str]) -> List[str]:
    """Every DeliveryInfo key a channel is judged on."""
    if channel == Channel.EMAIL:
        return [email_record_key(account) for account in email_accounts]
    if channel == Channel.CHAT:
        return [CHAT_KEY]
    return [SOCIAL_KEY]


def channel_summary(
    info: DeliveryInfo,
    channels: Iterable[Channel],
    email_accounts: Sequence[str],
) -> Dict[str, Dict[str, bool]]:
    """
    Success flags per requested channel and record key.

    Example
    -------
    >>> channel_summary(info, [Channel.EMAIL], ["acct1", "acct2"])
    {'email': {'email_acct1': True, 'email_acct2': False}}
    """
    return {
        channel.value: {
            key: info.has_success(key)
            for key in record_keys_for(channel, email_accounts)
        }
        for channel in channels
    }


def is_fully_delivered(
    channels: Iterable[Channel],
    info: DeliveryInfo,
    email_accounts: Sequence[str],
) -> bool:
    """
    True iff every requested channel has a recorded success.

    Email needs a success under every account key in ``email_accounts``;
    chat and social need one success under their own key. Successes may
    come from any recipient and any earlier run.
    """
    for channel in channels:
        keys = record_keys_for(channel, email_accounts)
        if not keys or not all(info.has_success(key) for key in keys):
            return False
    return True
