"""
Channel adapter interface.

A channel adapter translates between one delivery surface and the canonical
message model. The set of channels is closed; each conversation is bound to
exactly one of them through its `channel` field.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, Field

from autonaim_interview.config import Settings, get_settings
from autonaim_interview.errors import ChannelUnavailable, DeliveryFailed, outcome_code
from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.schemas import (
    CanonicalMessage,
    Channel,
    ChannelCapabilities,
    Conversation,
    ConversationRef,
    DeliveryStatus,
    Message,
)

if TYPE_CHECKING:
    from autonaim_interview.db.store import SessionStore
    from autonaim_interview.orchestrator.state_machine import ConversationStateMachine

logger = logging.getLogger(__name__)


class DeliveryResult(BaseModel):
    """Outcome of an outbound delivery."""

    message_id: UUID | None = Field(default=None, description="Stored message that was delivered")
    status: DeliveryStatus
    external_message_id: str | None = Field(default=None, description="Message id assigned by the transport")
    attempts: int = 0
    error: str | None = Field(default=None, description="Outcome code when delivery failed")

    @property
    def delivered(self) -> bool:
        return self.status is DeliveryStatus.SENT


class ChannelAdapter(ABC):
    """
    Capability set shared by all channels.

    Subclasses implement identity resolution, inbound translation and the
    raw transport send; retries and delivery bookkeeping live here.
    """

    channel: ClassVar[Channel]

    def __init__(
        self,
        store: SessionStore,
        state_machine: ConversationStateMachine,
        observability: Observability,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._store = store
        self._state_machine = state_machine
        self._obs = observability
        self._max_retries = settings.delivery_max_retries
        self._backoff_s = settings.delivery_backoff_s
        self._sleep = sleep

    @property
    @abstractmethod
    def capabilities(self) -> ChannelCapabilities:
        """What the transport supports (streaming, voice, message size)."""
        ...

    @abstractmethod
    async def receive_inbound(self, raw_event: Any) -> CanonicalMessage:
        """
        Translate a raw channel event into a canonical message.

        Raises:
            InvalidInbound: The event carries nothing the engine can use.
        """
        ...

    @abstractmethod
    async def resolve_identity(self, channel_token: str) -> ConversationRef:
        """
        Resolve the channel's identity token to a conversation.

        Raises:
            AccessDenied: Unknown, expired or revoked identity.
        """
        ...

    @abstractmethod
    async def _send(self, conversation: Conversation, message: CanonicalMessage) -> str | None:
        """
        Push one message through the transport.

        Returns:
            External message id, if the transport assigns one.

        Raises:
            DeliveryFailed: Transient transport failure.
            ChannelUnavailable: The channel credential cannot be used.
        """
        ...

    async def deliver_outbound(
        self,
        conversation_id: UUID,
        message: CanonicalMessage | Message,
    ) -> DeliveryResult:
        """
        Deliver a bot message with bounded retries.

        When given a stored message its delivery status is updated. A failed
        delivery never removes the stored message.
        """
        conversation = await self._store.get_conversation(conversation_id)
        stored = message if isinstance(message, Message) else None
        if stored is not None:
            message = CanonicalMessage(
                sender=stored.sender,
                content_type=stored.content_type,
                content=stored.content,
                channel=self.channel,
                metadata=dict(stored.metadata),
            )

        attempts = 0
        error: Exception | None = None
        while attempts <= self._max_retries:
            attempts += 1
            try:
                external_id = await self._send(conversation, message)
            except DeliveryFailed as e:
                error = e
                logger.warning(
                    f"Delivery to {self.channel.value} conversation {conversation_id} failed "
                    f"(attempt {attempts}/{self._max_retries + 1}): {e}"
                )
                if attempts <= self._max_retries:
                    await self._sleep(self._backoff_s * 2 ** (attempts - 1))
                continue
            except ChannelUnavailable as e:
                error = e
                break

            if stored is not None:
                await self._store.mark_delivery(stored.id, DeliveryStatus.SENT, external_id)
            self._obs.increment(f"delivery.{self.channel.value}.sent")
            return DeliveryResult(
                message_id=stored.id if stored else None,
                status=DeliveryStatus.SENT,
                external_message_id=external_id,
                attempts=attempts,
            )

        if stored is not None:
            await self._store.mark_delivery(stored.id, DeliveryStatus.FAILED)
        self._obs.report_failure(
            f"channel.{self.channel.value}",
            error,
            conversation_id=str(conversation_id),
            attempts=attempts,
        )
        return DeliveryResult(
            message_id=stored.id if stored else None,
            status=DeliveryStatus.FAILED,
            attempts=attempts,
            error=outcome_code(error),
        )


class ChannelRouter:
    """Selects the adapter for a conversation by its channel tag."""

    def __init__(self, adapters: Mapping[Channel, ChannelAdapter]) -> None:
        for channel, adapter in adapters.items():
            if adapter.channel is not Channel(channel):
                raise ValueError(f"Adapter {type(adapter).__name__} does not serve channel {channel}")
        self._adapters = {Channel(c): a for c, a in adapters.items()}

    def adapter_for(self, channel: Channel) -> ChannelAdapter:
        """
        Raises:
            ChannelUnavailable: No adapter is configured for the channel.
        """
        adapter = self._adapters.get(Channel(channel))
        if adapter is None:
            raise ChannelUnavailable(f"No adapter configured for channel {channel}")
        return adapter

    def serves(self, channel: Channel) -> bool:
        return Channel(channel) in self._adapters

    def capabilities_for(self, channel: Channel) -> ChannelCapabilities:
        adapter = self._adapters.get(Channel(channel))
        return adapter.capabilities if adapter else ChannelCapabilities()

    async def deliver(self, conversation: Conversation, message: CanonicalMessage | Message) -> DeliveryResult:
        return await self.adapter_for(conversation.channel).deliver_outbound(conversation.id, message)
