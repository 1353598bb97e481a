"""
Streaming web channel.

The candidate opens the interview link (access token) and talks to the bot
in a browser. Live turns are streamed as `start`, `delta`... and `end`
events; a terminal `error` event replaces `end` on failure. Replies that
are produced out-of-band (by a job) land in a per-conversation outbox the
client drains.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any, ClassVar, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from autonaim_interview.channels.base import ChannelAdapter
from autonaim_interview.errors import (
    AccessDenied,
    InterviewEngineError,
    InvalidInbound,
    TurnCancelled,
    outcome_code,
)
from autonaim_interview.orchestrator.schemas import (
    CanonicalMessage,
    Channel,
    ChannelCapabilities,
    Conversation,
    ConversationRef,
    DeliveryStatus,
    Message,
    SenderRole,
    TurnChunk,
)

logger = logging.getLogger(__name__)

_CANCELLED = object()


async def _next_chunk(chunks: AsyncIterator[TurnChunk], cancel: asyncio.Event | None) -> Any:
    """
    Await the next chunk of a live turn.

    Returns None once the turn stream is exhausted, or `_CANCELLED` as soon
    as `cancel` is set, even while the model call is still in flight. The
    interrupted step is cancelled, which unwinds the turn uncommitted.
    """
    if cancel is None:
        return await anext(chunks, None)
    if cancel.is_set():
        return _CANCELLED

    step = asyncio.ensure_future(anext(chunks, None))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({step, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        step.cancel()
        raise
    finally:
        waiter.cancel()

    if not cancel.is_set():
        return step.result()
    if not step.done():
        step.cancel()
        await asyncio.wait({step})
    elif not step.cancelled() and step.exception() is not None:
        logger.debug(f"Discarding failure of a cancelled turn: {step.exception()!r}")
    return _CANCELLED


class WebInboundEvent(BaseModel):
    """Body of a web chat request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    text: str = Field(..., min_length=1, max_length=8000)
    message_id: str | None = Field(default=None, description="Client-side message id")


class StreamEvent(BaseModel):
    """One event of the web reply stream."""

    type: Literal["start", "delta", "end", "error"]
    text: str = ""
    message_id: UUID | None = None
    completed: bool = False
    code: str | None = Field(default=None, description="Outcome code of an error event")


class WebChannelAdapter(ChannelAdapter):
    """Browser chat reached through a short-lived interview link."""

    channel: ClassVar[Channel] = Channel.WEB

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._outboxes: defaultdict[UUID, deque[CanonicalMessage]] = defaultdict(deque)

    @property
    def capabilities(self) -> ChannelCapabilities:
        return ChannelCapabilities(streaming=True, voice_input=False, max_message_chars=8000)

    async def receive_inbound(self, raw_event: Any) -> CanonicalMessage:
        try:
            event = WebInboundEvent.model_validate(raw_event)
        except ValidationError as e:
            raise InvalidInbound(f"Invalid web chat request: {e.error_count()} error(s)") from e
        return CanonicalMessage(
            sender=SenderRole.CANDIDATE,
            content=event.text,
            external_message_id=event.message_id,
            channel=Channel.WEB,
        )

    async def resolve_identity(self, channel_token: str, session_id: str | None = None) -> ConversationRef:
        """
        Resolve an interview link token.

        The session id, when the client sends one, must name the same
        conversation the token is bound to.

        Raises:
            AccessDenied: Unknown, expired or revoked token, or a session mismatch.
        """
        ref = await self._store.resolve_token(channel_token)
        if ref.channel is not Channel.WEB:
            raise AccessDenied()
        if session_id is not None and session_id != str(ref.conversation_id):
            raise AccessDenied()
        return ref

    async def _send(self, conversation: Conversation, message: CanonicalMessage) -> str | None:
        self._outboxes[conversation.id].append(message)
        return None

    def drain_outbox(self, conversation_id: UUID) -> list[CanonicalMessage]:
        """Pending out-of-band messages, oldest first."""
        outbox = self._outboxes.pop(conversation_id, None)
        return list(outbox) if outbox else []

    async def history(self, channel_token: str, session_id: str | None = None) -> list[Message]:
        """Messages of the conversation behind a token, in creation order."""
        ref = await self.resolve_identity(channel_token, session_id)
        return await self._store.list_messages(ref.conversation_id)

    async def stream_reply(
        self,
        channel_token: str,
        raw_event: Any,
        session_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Run one live turn and stream the reply.

        Setting `cancel` (or closing the iterator) stops generation; the
        turn is then not committed. A cancelled stream ends with an `error`
        event carrying the `cancelled` code, and no delta follows the cancel.
        """
        try:
            ref = await self.resolve_identity(channel_token, session_id)
            inbound = await self.receive_inbound(raw_event)
        except InterviewEngineError as e:
            logger.info(f"Rejected web chat request: {e}")
            yield StreamEvent(type="error", code=outcome_code(e))
            return

        yield StreamEvent(type="start")
        try:
            async with aclosing(
                self._state_machine.stream_turn(ref.conversation_id, inbound, self.capabilities)
            ) as chunks:
                while True:
                    chunk = await _next_chunk(chunks, cancel)
                    if chunk is None:
                        break
                    if chunk is _CANCELLED:
                        logger.info(f"Web stream for conversation {ref.conversation_id} cancelled")
                        yield StreamEvent(type="error", code=outcome_code(TurnCancelled(ref.conversation_id)))
                        return
                    if chunk.is_final:
                        if chunk.reply is not None:
                            await self._store.mark_delivery(chunk.reply.id, DeliveryStatus.SENT)
                        yield StreamEvent(
                            type="end",
                            message_id=chunk.reply.id if chunk.reply else None,
                            completed=bool(chunk.final and chunk.final.completes_interview),
                        )
                        return
                    yield StreamEvent(type="delta", text=chunk.delta)
        except InterviewEngineError as e:
            yield StreamEvent(type="error", code=outcome_code(e))
            return
        except Exception as e:
            self._obs.report_failure("channel.web", e, conversation_id=str(ref.conversation_id))
            yield StreamEvent(type="error", code=outcome_code(e))
            return

        # Stream ended without a committed turn.
        yield StreamEvent(type="error", code="unavailable")
