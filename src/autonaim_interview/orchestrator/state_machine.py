"""
Conversation state machine.

The single serialization point for conversation mutation. Every turn runs
inside a per-conversation mutual-exclusion scope, so turns on one
conversation never interleave while unrelated conversations proceed in
parallel. A turn is committed as a whole (inbound message plus reply) or
not at all.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Literal
from uuid import UUID, uuid4

from autonaim_interview.errors import ConversationClosed, InvalidTransition, TurnInProgress
from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.schemas import (
    CanonicalMessage,
    ChannelCapabilities,
    Conversation,
    ConversationStatus,
    Message,
    OutboundMessage,
    SenderRole,
    TurnChunk,
    TurnResult,
)
from autonaim_interview.orchestrator.turn_orchestrator import TurnOrchestrator

if TYPE_CHECKING:
    from autonaim_interview.db.store import SessionStore
    from autonaim_interview.jobs.dispatcher import JobDispatcher

logger = logging.getLogger(__name__)


class ConversationStateMachine:
    """
    Owns transitions and turn sequencing for all conversations of a process.

    Lifecycle: ACTIVE -> COMPLETED (interview concluded) and
    ACTIVE -> CANCELLED (timeout, opt-out, administrative action).
    """

    def __init__(
        self,
        store: SessionStore,
        orchestrator: TurnOrchestrator,
        observability: Observability,
        dispatcher: JobDispatcher | None = None,
        conflict_policy: Literal["wait", "reject"] = "wait",
        inactivity_window: timedelta = timedelta(hours=24),
        turn_lease: timedelta = timedelta(minutes=5),
        lease_poll_s: float = 0.05,
        owner: str | None = None,
    ) -> None:
        """
        Initialize the state machine.

        Args:
            store: Session store.
            orchestrator: Turn orchestrator producing bot replies.
            observability: Process observability state.
            dispatcher: Job dispatcher for scoring passes on completion.
            conflict_policy: "wait" queues a concurrent turn behind the running
                one, "reject" fails it with TurnInProgress.
            inactivity_window: Idle time after which the sweep cancels.
            turn_lease: Lifetime of the database turn lease; a crashed
                holder blocks the conversation at most this long.
            lease_poll_s: Poll interval while waiting for another process's turn.
            owner: Identifier written to the turn lease.
        """
        self._store = store
        self._orchestrator = orchestrator
        self._obs = observability
        self._dispatcher = dispatcher
        self._conflict_policy = conflict_policy
        self._inactivity_window = inactivity_window
        self._turn_lease = turn_lease
        self._lease_poll_s = lease_poll_s
        self._owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._holders: Counter[UUID] = Counter()

    def attach_dispatcher(self, dispatcher: JobDispatcher) -> None:
        self._dispatcher = dispatcher

    def is_busy(self, conversation_id: UUID) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def _turn_scope(self, conversation_id: UUID, policy: str | None = None) -> AsyncIterator[None]:
        """
        Mutual exclusion for one conversation.

        The asyncio lock orders turns inside this process; the turn lease in
        the store orders them against other processes sharing the database.
        """
        policy = policy or self._conflict_policy
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        if policy == "reject" and lock.locked():
            self._obs.increment("turn.rejected")
            raise TurnInProgress(conversation_id)
        self._holders[conversation_id] += 1
        try:
            async with lock:
                await self._claim_turn(conversation_id, policy)
                try:
                    yield
                finally:
                    await self._store.release_turn(conversation_id, self._owner)
        finally:
            self._holders[conversation_id] -= 1
            if self._holders[conversation_id] <= 0:
                del self._holders[conversation_id]
                self._locks.pop(conversation_id, None)

    async def _claim_turn(self, conversation_id: UUID, policy: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._turn_lease.total_seconds()
        while not await self._store.acquire_turn(conversation_id, self._owner, self._turn_lease):
            if policy == "reject" or loop.time() >= deadline:
                self._obs.increment("turn.rejected")
                raise TurnInProgress(conversation_id)
            await asyncio.sleep(self._lease_poll_s)

    async def _load_active(self, conversation_id: UUID) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if not conversation.is_active:
            raise ConversationClosed(conversation_id, conversation.status.value)
        return conversation

    def _pending(self, conversation: Conversation, inbound: CanonicalMessage) -> Message:
        """The inbound message as it will look once appended."""
        return Message(
            conversation_id=conversation.id,
            sequence=conversation.message_count,
            sender=inbound.sender,
            content_type=inbound.content_type,
            content=inbound.content,
            file_id=inbound.file_id,
            channel=inbound.channel,
            metadata=inbound.metadata,
        )

    # Turns

    async def handle_inbound_turn(
        self,
        conversation_id: UUID,
        inbound: CanonicalMessage,
        capabilities: ChannelCapabilities | None = None,
    ) -> TurnResult:
        """
        Run one full turn: generate a reply to the inbound message and commit both.

        Args:
            conversation_id: Target conversation.
            inbound: The candidate's message.
            capabilities: Capabilities of the originating channel.

        Returns:
            The committed turn.

        Raises:
            ConversationClosed: The conversation is COMPLETED or CANCELLED.
            TurnInProgress: Another turn is running and the policy is "reject".
        """
        async with self._turn_scope(conversation_id):
            with self._obs.span("turn.handle", conversation_id=str(conversation_id)):
                conversation = await self._load_active(conversation_id)
                history = await self._store.get_history(conversation_id)
                pending = self._pending(conversation, inbound)
                outbound = await self._orchestrator.generate_turn(
                    [*history, pending], capabilities, conversation=conversation
                )
                return await self._commit_turn(conversation, inbound, outbound)

    async def stream_turn(
        self,
        conversation_id: UUID,
        inbound: CanonicalMessage,
        capabilities: ChannelCapabilities | None = None,
    ) -> AsyncIterator[TurnChunk]:
        """
        Run one turn, yielding reply deltas as they are generated.

        The turn is committed only after the stream completes; the last chunk
        then carries the stored messages. Closing the generator early (for
        example on client disconnect) stops generation and commits nothing.
        """
        capabilities = capabilities or ChannelCapabilities(streaming=True)
        async with self._turn_scope(conversation_id):
            conversation = await self._load_active(conversation_id)
            history = await self._store.get_history(conversation_id)
            pending = self._pending(conversation, inbound)
            outbound: OutboundMessage | None = None
            async with aclosing(
                self._orchestrator.stream_turn([*history, pending], capabilities, conversation=conversation)
            ) as chunks:
                async for chunk in chunks:
                    if chunk.final is not None:
                        outbound = chunk.final
                        continue
                    yield chunk
            if outbound is None:
                return
            result = await self._commit_turn(conversation, inbound, outbound)
            yield TurnChunk(final=outbound, inbound=result.inbound, reply=result.reply)

    async def _commit_turn(
        self,
        conversation: Conversation,
        inbound: CanonicalMessage,
        outbound: OutboundMessage,
    ) -> TurnResult:
        inbound_msg, reply_msg = await self._store.append_turn(
            conversation.id, inbound, outbound.to_canonical(channel=conversation.channel)
        )
        if conversation.message_count == 0:
            self._obs.funnel_event("interview.started", conversation_id=str(conversation.id))
        self._obs.funnel_event("interview.message", conversation_id=str(conversation.id), sequence=inbound_msg.sequence)
        status = await self._after_reply(conversation, outbound)
        return TurnResult(inbound=inbound_msg, reply=reply_msg, outbound=outbound, status=status)

    async def record_inbound(self, conversation_id: UUID, inbound: CanonicalMessage) -> Message:
        """
        Append a candidate message without producing a reply.

        Used for content that must be processed out-of-band first (voice).
        """
        async with self._turn_scope(conversation_id):
            conversation = await self._load_active(conversation_id)
            stored = await self._store.append_message(conversation_id, inbound)
            if conversation.message_count == 0:
                self._obs.funnel_event("interview.started", conversation_id=str(conversation_id))
            return stored

    async def reply_to_message(
        self,
        conversation_id: UUID,
        message_id: UUID,
        capabilities: ChannelCapabilities | None = None,
    ) -> TurnResult | None:
        """
        Generate the reply to an already stored message (e.g. a transcribed voice note).

        Idempotent: returns the existing reply if one was produced before.
        Returns None when the conversation no longer accepts replies, or when
        the bot has already spoken after the message (the candidate moved
        on, and the transcript is context for the next turn instead).
        """
        async with self._turn_scope(conversation_id):
            conversation = await self._store.get_conversation(conversation_id)
            existing = await self._store.find_reply_to(conversation_id, message_id)
            if existing is not None:
                logger.info(f"Reply to message {message_id} already exists, skipping")
                return TurnResult(
                    reply=existing,
                    outbound=OutboundMessage(content=existing.content),
                    status=conversation.status,
                )
            if not conversation.is_active:
                logger.info(f"Conversation {conversation_id} is {conversation.status.value}, not replying")
                return None

            history = await self._store.get_history(conversation_id)
            target = next((m for m in history if m.id == message_id), None)
            if target is None:
                logger.warning(f"Message {message_id} not found in conversation {conversation_id}, not replying")
                return None
            if any(m.sender is SenderRole.BOT and m.sequence > target.sequence for m in history):
                logger.info(f"Bot already replied after message {message_id}, skipping out-of-band reply")
                self._obs.increment("turn.reply_superseded")
                return None

            outbound = await self._orchestrator.generate_turn(history, capabilities, conversation=conversation)
            reply = outbound.to_canonical(channel=conversation.channel)
            reply.metadata["in_reply_to"] = str(message_id)
            stored = await self._store.append_message(conversation_id, reply)
            status = await self._after_reply(conversation, outbound)
            return TurnResult(reply=stored, outbound=outbound, status=status)

    async def apply_transcript(self, message: Message, transcript: str) -> Message | None:
        """
        Write a voice transcript back onto its message.

        Cancelled conversations no longer accept updates. Completed ones do,
        since the transcript is new material for scoring.

        Returns:
            The updated message, or None if the update was not accepted.
        """
        async with self._turn_scope(message.conversation_id, policy="wait"):
            conversation = await self._store.get_conversation(message.conversation_id)
            if conversation.status is ConversationStatus.CANCELLED:
                logger.info(f"Conversation {conversation.id} is cancelled, dropping transcript for {message.id}")
                return None
            return await self._store.set_transcript(message.id, transcript)

    async def _after_reply(self, conversation: Conversation, outbound: OutboundMessage) -> ConversationStatus:
        if not outbound.completes_interview:
            return ConversationStatus.ACTIVE
        await self._finish(conversation.id, ConversationStatus.COMPLETED, "interview concluded")
        return ConversationStatus.COMPLETED

    # Transitions

    async def complete(self, conversation_id: UUID, reason: str = "interview concluded") -> Conversation:
        """Explicit end signal: ACTIVE -> COMPLETED."""
        async with self._turn_scope(conversation_id, policy="wait"):
            return await self._finish(conversation_id, ConversationStatus.COMPLETED, reason)

    async def cancel(self, conversation_id: UUID, reason: str = "cancelled") -> Conversation:
        """Candidate opt-out or administrative action: ACTIVE -> CANCELLED."""
        async with self._turn_scope(conversation_id, policy="wait"):
            return await self._finish(conversation_id, ConversationStatus.CANCELLED, reason)

    async def _finish(self, conversation_id: UUID, status: ConversationStatus, reason: str) -> Conversation:
        conversation = await self._store.transition_status(conversation_id, status, reason)
        if status is ConversationStatus.COMPLETED:
            self._obs.funnel_event("interview.completed", conversation_id=str(conversation_id))
            if self._dispatcher is not None:
                await self._dispatcher.enqueue("interview.score", {"conversationId": str(conversation_id)})
        else:
            self._obs.funnel_event("interview.cancelled", conversation_id=str(conversation_id), reason=reason)
        return conversation

    async def sweep_idle(self, now: datetime | None = None, limit: int = 100) -> list[UUID]:
        """
        Cancel ACTIVE conversations idle longer than the inactivity window.

        Conversations with a turn in flight are skipped.

        Returns:
            Ids of the conversations that were cancelled.
        """
        now = now or self._store.now()
        cutoff = now - self._inactivity_window
        cancelled: list[UUID] = []
        for conversation in await self._store.list_idle(cutoff, limit):
            if self.is_busy(conversation.id):
                continue
            try:
                async with self._turn_scope(conversation.id, policy="reject"):
                    current = await self._store.get_conversation(conversation.id)
                    if not current.is_active or current.updated_at >= cutoff:
                        continue
                    await self._finish(conversation.id, ConversationStatus.CANCELLED, "inactivity timeout")
            except (TurnInProgress, InvalidTransition) as e:
                logger.debug(f"Skipping idle conversation {conversation.id}: {e}")
                continue
            cancelled.append(conversation.id)
        if cancelled:
            logger.info(f"Idle sweep cancelled {len(cancelled)} conversation(s)")
        return cancelled
