"""
channels — Per-channel delivery backends.

Each sender exposes:
    configured                                   → bool
    await send(message, recipients, attachments) → List[RecipientResult]
    await verify()                               → bool

Senders are long-lived and hold one provider client each. Inter-send
pauses live in the senders; attachment retries live in retry.py.
"""

from __future__ import annotations

import asyncio
from typing import Dict

from backend.app.dispatch.channel_config import ChannelConfig
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.channels.chat_bot import ChatBotSender
from backend.app.dispatch.channels.email_sender import EmailSender
from backend.app.dispatch.channels.social_graph import SocialGraphSender
from backend.app.dispatch.models import Channel
from backend.app.dispatch.retry import Pause


def build_senders(
    config: ChannelConfig,
    *,
    pause: Pause = asyncio.sleep,
) -> Dict[Channel, ChannelSender]:
    """One sender per channel, all sharing the configured time unit."""
    return {
        Channel.EMAIL: EmailSender(config.email, time_unit=config.time_unit, pause=pause),
        Channel.CHAT: ChatBotSender(config.chat, time_unit=config.time_unit, pause=pause),
        Channel.SOCIAL: SocialGraphSender(config.social, time_unit=config.time_unit, pause=pause),
    }
