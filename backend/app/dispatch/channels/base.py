"""
Common contract for channel senders.

A sender owns one provider client for its whole lifetime, sends one message
to every resolved recipient of its channel and reports one RecipientResult
per recipient. Provider and network failures are turned into failed
records inside the sender; only problems that make the whole channel
unusable for the run escape as exceptions.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import ClassVar, List, Sequence

from backend.app.dispatch.models import Attachment, Channel, Message, RecipientResult
from backend.app.dispatch.recipients import ResolvedRecipient
from backend.app.dispatch.retry import Pause


class ChannelSender(ABC):
    """Base class for the email, chat-bot and social-graph senders."""

    channel: ClassVar[Channel]

    def __init__(self, *, time_unit: float = 1.0, pause: Pause = asyncio.sleep) -> None:
        self.time_unit = time_unit
        self._pause = pause

    @property
    @abstractmethod
    def configured(self) -> bool:
        """True when the channel has the credentials it needs."""

    @abstractmethod
    async def send(
        self,
        message: Message,
        recipients: Sequence[ResolvedRecipient],
        attachments: Sequence[Attachment],
    ) -> List[RecipientResult]:
        """Deliver ``message`` to every recipient, sequentially."""

    async def verify(self) -> bool:
        """Probe the provider with the configured credentials."""
        return self.configured

    async def aclose(self) -> None:
        """Release the provider client."""

    async def pause_units(self, units: float) -> None:
        await self._pause(units * self.time_unit)
