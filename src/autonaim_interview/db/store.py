"""
Session Store: durable record of conversations, their message log,
token bindings, scoring passes and channel credentials.

Every public coroutine runs in its own transaction. Appends to one
conversation serialize on the conversation row (see
`ConversationRepository.reserve_sequences`), so concurrent writers never
interleave partially and sequence numbers stay gap-free.
"""

import hashlib
import logging
import secrets
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from autonaim_interview.db.models import (
    Base,
    ChannelCredentialModel,
    ConversationModel,
    InterviewSessionModel,
    MessageModel,
    ScoringResultModel,
)
from autonaim_interview.db.repository import (
    ChannelCredentialRepository,
    ConversationRepository,
    InterviewSessionRepository,
    MessageRepository,
    ScoringResultRepository,
)
from autonaim_interview.errors import (
    AccessDenied,
    ChannelUnavailable,
    ConversationClosed,
    ConversationNotFound,
    InvalidTransition,
)
from autonaim_interview.orchestrator.schemas import (
    CanonicalMessage,
    Channel,
    ChannelCredential,
    Conversation,
    ConversationRef,
    ConversationStatus,
    ConversationView,
    DeliveryStatus,
    IssuedToken,
    Message,
    ScoringResult,
    SenderRole,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _to_conversation(model: ConversationModel) -> Conversation:
    return Conversation(
        id=model.id,
        channel=Channel(model.channel),
        candidate_ref=model.candidate_ref,
        status=ConversationStatus(model.status),
        status_reason=model.status_reason,
        message_count=model.message_count,
        metadata=dict(model.metadata_ or {}),
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
    )


def _to_message(model: MessageModel) -> Message:
    return Message(
        id=model.id,
        conversation_id=model.conversation_id,
        sequence=model.sequence,
        sender=SenderRole(model.sender),
        content_type=model.content_type,
        content=model.content,
        file_id=model.file_id,
        voice_duration=model.voice_duration,
        voice_transcript=model.voice_transcript,
        external_message_id=model.external_message_id,
        channel=Channel(model.channel) if model.channel else None,
        delivery_status=DeliveryStatus(model.delivery_status) if model.delivery_status else None,
        metadata=dict(model.metadata_ or {}),
        created_at=as_utc(model.created_at),
    )


def _to_scoring(model: ScoringResultModel) -> ScoringResult:
    return ScoringResult(
        id=model.id,
        conversation_id=model.conversation_id,
        channel=Channel(model.channel) if model.channel else None,
        score=model.score,
        detailed_score=model.detailed_score,
        analysis=model.analysis,
        recommendation=model.recommendation,
        snapshot_hash=model.snapshot_hash,
        features=dict(model.features or {}),
        created_at=as_utc(model.created_at),
    )


def _to_credential(model: ChannelCredentialModel) -> ChannelCredential:
    return ChannelCredential(
        id=model.id,
        workspace_id=model.workspace_id,
        channel=Channel(model.channel),
        phone=model.phone,
        user_info=dict(model.user_info or {}),
        session_data=model.session_data,
        is_active=model.is_active,
        auth_error=model.auth_error,
        auth_error_at=as_utc(model.auth_error_at),
        last_used_at=as_utc(model.last_used_at),
        in_use_by=model.in_use_by,
        lease_expires_at=as_utc(model.lease_expires_at),
    )


class SessionStore:
    """Durable conversation state behind an async SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: AsyncEngine | None = None,
        token_ttl_minutes: int = 7 * 24 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the store.

        Args:
            session_factory: Factory producing AsyncSession objects.
            engine: Engine behind the factory, needed for create_all/dispose.
            token_ttl_minutes: Default lifetime of issued access tokens.
            clock: Source of "now"; overridable in tests.
        """
        self._session_factory = session_factory
        self._engine = engine
        self._token_ttl = timedelta(minutes=token_ttl_minutes)
        self._clock = clock

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False, **kwargs: Any) -> "SessionStore":
        """Build a store with its own engine."""
        engine = create_async_engine(database_url, echo=echo)
        factory = async_sessionmaker(engine, expire_on_commit=False)
        return cls(factory, engine=engine, **kwargs)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    def now(self) -> datetime:
        return self._clock()

    async def create_all(self) -> None:
        """Create all tables (bootstrap helper, not a migration tool)."""
        if self._engine is None:
            raise RuntimeError("SessionStore was built without an engine")
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema created")

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    # Conversations

    async def create_conversation(
        self,
        channel: Channel,
        candidate_ref: str,
        metadata: dict[str, Any] | None = None,
    ) -> Conversation:
        """
        Create a new ACTIVE conversation.

        Args:
            channel: Channel the conversation is bound to.
            candidate_ref: Reference to the candidate.
            metadata: Optional free-form metadata.

        Returns:
            The created conversation.
        """
        now = self.now()
        async with self._transaction() as session:
            model = ConversationModel(
                channel=Channel(channel).value,
                candidate_ref=candidate_ref,
                status=ConversationStatus.ACTIVE.value,
                message_count=0,
                metadata_=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            model = await ConversationRepository(session).create(model)
            conversation = _to_conversation(model)
        logger.info(f"Created {conversation.channel.value} conversation {conversation.id} for {candidate_ref}")
        return conversation

    async def get_conversation(self, conversation_id: UUID) -> Conversation:
        """
        Load a conversation.

        Raises:
            ConversationNotFound: If no such conversation exists.
        """
        async with self._transaction() as session:
            model = await ConversationRepository(session).get_by_id(conversation_id)
            if model is None:
                raise ConversationNotFound()
            return _to_conversation(model)

    async def find_conversation(self, candidate_ref: str, channel: Channel) -> Conversation | None:
        """Most recent conversation for a candidate on a channel."""
        async with self._transaction() as session:
            model = await ConversationRepository(session).get_by_candidate_ref(candidate_ref, Channel(channel).value)
            return _to_conversation(model) if model else None

    async def find_by_chat_id(self, chat_id: str) -> Conversation | None:
        """Active messaging-bot conversation bound to an external chat id."""
        async with self._transaction() as session:
            model = await ConversationRepository(session).get_by_chat_id(str(chat_id))
            return _to_conversation(model) if model else None

    async def update_metadata(self, conversation_id: UUID, values: dict[str, Any]) -> Conversation:
        """Merge values into a conversation's metadata blob."""
        async with self._transaction() as session:
            repo = ConversationRepository(session)
            await repo.update_metadata(conversation_id, values, self.now())
            model = await repo.get_by_id(conversation_id)
            if model is None:
                raise ConversationNotFound()
            return _to_conversation(model)

    async def bind_chat(self, conversation_id: UUID, chat_id: str) -> Conversation:
        """Bind an external chat id to a conversation."""
        return await self.update_metadata(conversation_id, {"chat_id": str(chat_id)})

    async def transition_status(
        self,
        conversation_id: UUID,
        status: ConversationStatus,
        reason: str | None = None,
    ) -> Conversation:
        """
        Move a conversation to a terminal status.

        Args:
            conversation_id: Conversation to update.
            status: COMPLETED or CANCELLED.
            reason: Optional explanation stored with the status.

        Raises:
            InvalidTransition: If the target is not reachable from the current status.
            ConversationNotFound: If the conversation does not exist.
        """
        target = ConversationStatus(status)
        async with self._transaction() as session:
            repo = ConversationRepository(session)
            if target.is_terminal and await repo.set_terminal_status(
                conversation_id, target.value, reason, self.now()
            ):
                model = await repo.get_by_id(conversation_id)
                conversation = _to_conversation(model)
            else:
                model = await repo.get_by_id(conversation_id)
                if model is None:
                    raise ConversationNotFound()
                raise InvalidTransition(conversation_id, model.status, target.value)
        logger.info(f"Conversation {conversation_id} -> {target.value} ({reason})")
        return conversation

    async def acquire_turn(self, conversation_id: UUID, owner: str, lease: timedelta) -> bool:
        """
        Claim the right to run a turn on a conversation, across processes.

        Returns:
            False while another owner holds an unexpired turn lease.

        Raises:
            ConversationNotFound: If the conversation does not exist.
        """
        now = self.now()
        async with self._transaction() as session:
            repo = ConversationRepository(session)
            if await repo.try_turn_lease(conversation_id, owner, now, now + lease):
                return True
            if await repo.get_by_id(conversation_id) is None:
                raise ConversationNotFound()
            return False

    async def release_turn(self, conversation_id: UUID, owner: str) -> None:
        async with self._transaction() as session:
            await ConversationRepository(session).release_turn_lease(conversation_id, owner)

    async def list_idle(self, cutoff: datetime, limit: int = 100) -> list[Conversation]:
        """ACTIVE conversations not updated since the cutoff."""
        async with self._transaction() as session:
            models = await ConversationRepository(session).list_idle(cutoff, limit)
            return [_to_conversation(m) for m in models]

    # Message log

    async def append_message(self, conversation_id: UUID, message: CanonicalMessage) -> Message:
        """
        Append one message to an ACTIVE conversation.

        Raises:
            ConversationClosed: If the conversation is COMPLETED or CANCELLED.
            ConversationNotFound: If the conversation does not exist.
        """
        (stored,) = await self.append_messages(conversation_id, [message])
        return stored

    async def append_turn(
        self,
        conversation_id: UUID,
        inbound: CanonicalMessage,
        outbound: CanonicalMessage,
    ) -> tuple[Message, Message]:
        """Append an inbound message and its reply as one atomic unit."""
        inbound_msg, outbound_msg = await self.append_messages(conversation_id, [inbound, outbound])
        return inbound_msg, outbound_msg

    async def append_messages(
        self,
        conversation_id: UUID,
        messages: Sequence[CanonicalMessage],
    ) -> list[Message]:
        """
        Append messages in order within a single transaction.

        Args:
            conversation_id: Conversation to append to.
            messages: Messages to append, in order.

        Returns:
            The stored messages with their sequence numbers.
        """
        now = self.now()
        async with self._transaction() as session:
            conversations = ConversationRepository(session)
            first_seq = await conversations.reserve_sequences(conversation_id, len(messages), now)
            if first_seq is None:
                model = await conversations.get_by_id(conversation_id)
                if model is None:
                    raise ConversationNotFound()
                raise ConversationClosed(conversation_id, model.status)

            repo = MessageRepository(session)
            stored: list[Message] = []
            for offset, message in enumerate(messages):
                delivery = DeliveryStatus.PENDING.value if message.sender is SenderRole.BOT else None
                model = MessageModel(
                    conversation_id=conversation_id,
                    sequence=first_seq + offset,
                    sender=message.sender.value,
                    content_type=message.content_type.value,
                    content=message.content,
                    file_id=message.file_id,
                    voice_duration=message.voice_duration,
                    external_message_id=message.external_message_id,
                    channel=message.channel.value if message.channel else None,
                    delivery_status=delivery,
                    metadata_=dict(message.metadata),
                    created_at=now,
                )
                stored.append(_to_message(await repo.create(model)))
        logger.debug(f"Appended {len(stored)} message(s) to {conversation_id} at sequence {first_seq}")
        return stored

    async def get_history(self, conversation_id: UUID, limit: int | None = None) -> list[Message]:
        """
        Messages of a conversation in append order.

        Args:
            conversation_id: The conversation.
            limit: Keep only the most recent N messages.

        Raises:
            ConversationNotFound: If the conversation does not exist.
        """
        async with self._transaction() as session:
            if await ConversationRepository(session).get_by_id(conversation_id) is None:
                raise ConversationNotFound()
            models = await MessageRepository(session).list_for_conversation(conversation_id, limit)
            return [_to_message(m) for m in models]

    async def list_messages(self, conversation_id: UUID) -> list[Message]:
        """Full message list for presentation layers."""
        return await self.get_history(conversation_id)

    async def get_message(self, message_id: UUID) -> Message | None:
        async with self._transaction() as session:
            model = await MessageRepository(session).get_by_id(message_id)
            return _to_message(model) if model else None

    async def find_by_external_id(self, conversation_id: UUID, external_message_id: str) -> Message | None:
        async with self._transaction() as session:
            model = await MessageRepository(session).get_by_external_id(conversation_id, external_message_id)
            return _to_message(model) if model else None

    async def find_reply_to(self, conversation_id: UUID, message_id: UUID) -> Message | None:
        """Bot message generated in reply to the given message, if any."""
        async with self._transaction() as session:
            model = await MessageRepository(session).find_reply_to(conversation_id, message_id)
            return _to_message(model) if model else None

    async def set_transcript(self, message_id: UUID, transcript: str) -> Message | None:
        """
        Write a transcript back onto a voice message.

        The first transcript wins; later writes leave the message untouched.

        Returns:
            The message after the update, or None if it does not exist.
        """
        now = self.now()
        async with self._transaction() as session:
            repo = MessageRepository(session)
            model = await repo.get_by_id(message_id)
            if model is None:
                return None
            if model.voice_transcript is None:
                model.voice_transcript = transcript
                conversation = await ConversationRepository(session).get_by_id(model.conversation_id)
                if conversation is not None:
                    conversation.updated_at = now
                model = await repo.update(model)
            return _to_message(model)

    async def mark_delivery(
        self,
        message_id: UUID,
        status: DeliveryStatus,
        external_message_id: str | None = None,
    ) -> Message | None:
        """Record the outcome of outbound delivery for a message."""
        async with self._transaction() as session:
            repo = MessageRepository(session)
            model = await repo.get_by_id(message_id)
            if model is None:
                return None
            model.delivery_status = DeliveryStatus(status).value
            if external_message_id is not None:
                model.external_message_id = external_message_id
            model = await repo.update(model)
            return _to_message(model)

    # Token bindings

    async def issue_token(
        self,
        conversation_id: UUID,
        ttl_minutes: int | None = None,
        pin_code: str | None = None,
    ) -> IssuedToken:
        """
        Issue an access token and pin code for a conversation.

        Only the sha256 of the token is persisted. A given pin code is reused
        instead of drawing a new one.
        """
        token = secrets.token_urlsafe(32)
        pin_code = pin_code or f"{secrets.randbelow(10000):04d}"
        now = self.now()
        expires_at = now + (timedelta(minutes=ttl_minutes) if ttl_minutes is not None else self._token_ttl)
        async with self._transaction() as session:
            if await ConversationRepository(session).get_by_id(conversation_id) is None:
                raise ConversationNotFound()
            await InterviewSessionRepository(session).create(
                InterviewSessionModel(
                    token_hash=hash_token(token),
                    conversation_id=conversation_id,
                    pin_code=pin_code,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
        return IssuedToken(
            token=token,
            pin_code=pin_code,
            conversation_id=conversation_id,
            expires_at=expires_at,
        )

    async def resolve_token(self, token: str) -> ConversationRef:
        """
        Resolve an access token to its conversation.

        Raises:
            AccessDenied: Token unknown, expired or revoked (indistinguishable).
        """
        if not token:
            raise AccessDenied()
        now = self.now()
        async with self._transaction() as session:
            binding = await InterviewSessionRepository(session).get_by_id(hash_token(token))
            if binding is None or binding.revoked_at is not None or as_utc(binding.expires_at) <= now:
                raise AccessDenied()
            conversation = await ConversationRepository(session).get_by_id(binding.conversation_id)
            if conversation is None:
                raise AccessDenied()
            return ConversationRef(conversation_id=conversation.id, channel=Channel(conversation.channel))

    async def resolve_pin(self, pin_code: str) -> UUID | None:
        """Conversation bound to a live pin code."""
        async with self._transaction() as session:
            binding = await InterviewSessionRepository(session).get_by_pin(pin_code, self.now())
            return binding.conversation_id if binding else None

    async def revoke_token(self, token: str) -> bool:
        async with self._transaction() as session:
            binding = await InterviewSessionRepository(session).get_by_id(hash_token(token))
            if binding is None or binding.revoked_at is not None:
                return False
            binding.revoked_at = self.now()
            return True

    # Scoring

    async def save_scoring(self, result: ScoringResult) -> ScoringResult:
        """Persist a scoring pass."""
        async with self._transaction() as session:
            model = await ScoringResultRepository(session).create(
                ScoringResultModel(
                    id=result.id,
                    conversation_id=result.conversation_id,
                    channel=result.channel.value if result.channel else None,
                    score=result.score,
                    detailed_score=result.detailed_score,
                    analysis=result.analysis,
                    recommendation=result.recommendation,
                    snapshot_hash=result.snapshot_hash,
                    features=dict(result.features),
                    created_at=result.created_at,
                )
            )
            return _to_scoring(model)

    async def latest_scoring(self, conversation_id: UUID) -> ScoringResult | None:
        async with self._transaction() as session:
            model = await ScoringResultRepository(session).latest_for_conversation(conversation_id)
            return _to_scoring(model) if model else None

    async def list_scoring(self, conversation_id: UUID) -> list[ScoringResult]:
        async with self._transaction() as session:
            models = await ScoringResultRepository(session).list_for_conversation(conversation_id)
            return [_to_scoring(m) for m in models]

    async def get_conversation_view(self, conversation_id: UUID) -> ConversationView:
        """
        Read contract for presentation layers.

        Raises:
            ConversationNotFound: If the conversation does not exist.
        """
        async with self._transaction() as session:
            model = await ConversationRepository(session).get_by_id(conversation_id)
            if model is None:
                raise ConversationNotFound()
            scoring = await ScoringResultRepository(session).latest_for_conversation(conversation_id)
            return ConversationView(
                id=model.id,
                channel=Channel(model.channel),
                status=ConversationStatus(model.status),
                candidate_ref=model.candidate_ref,
                message_count=model.message_count,
                created_at=as_utc(model.created_at),
                updated_at=as_utc(model.updated_at),
                latest_scoring=_to_scoring(scoring) if scoring else None,
            )

    # Channel credentials

    async def save_credential(self, credential: ChannelCredential) -> ChannelCredential:
        async with self._transaction() as session:
            model = await ChannelCredentialRepository(session).create(
                ChannelCredentialModel(
                    id=credential.id,
                    workspace_id=credential.workspace_id,
                    channel=credential.channel.value,
                    phone=credential.phone,
                    user_info=dict(credential.user_info),
                    session_data=credential.session_data,
                    is_active=credential.is_active,
                    auth_error=credential.auth_error,
                    auth_error_at=credential.auth_error_at,
                )
            )
            return _to_credential(model)

    async def get_credential(self, credential_id: UUID) -> ChannelCredential | None:
        async with self._transaction() as session:
            model = await ChannelCredentialRepository(session).get_by_id(credential_id)
            return _to_credential(model) if model else None

    async def get_workspace_credential(self, workspace_id: str) -> ChannelCredential | None:
        async with self._transaction() as session:
            model = await ChannelCredentialRepository(session).get_for_workspace(workspace_id)
            return _to_credential(model) if model else None

    async def acquire_credential(self, credential_id: UUID, owner: str, lease_seconds: int) -> ChannelCredential:
        """
        Lease a credential exclusively to one adapter instance.

        Raises:
            ChannelUnavailable: Missing, inactive, in authError, or leased elsewhere.
        """
        now = self.now()
        async with self._transaction() as session:
            repo = ChannelCredentialRepository(session)
            model = await repo.get_by_id(credential_id)
            if model is None or not model.is_active:
                raise ChannelUnavailable("Channel credential is not available")
            if model.auth_error is not None:
                raise ChannelUnavailable(f"Channel credential needs re-authentication: {model.auth_error}")
            if not await repo.try_lease(credential_id, owner, now, now + timedelta(seconds=lease_seconds)):
                raise ChannelUnavailable("Channel credential is in use by another instance")
            await session.refresh(model)
            return _to_credential(model)

    async def release_credential(self, credential_id: UUID, owner: str) -> None:
        async with self._transaction() as session:
            await ChannelCredentialRepository(session).release_lease(credential_id, owner)

    async def mark_auth_error(self, credential_id: UUID, error: str) -> None:
        """Stamp authError/authErrorAt; the credential is unusable afterwards."""
        async with self._transaction() as session:
            model = await ChannelCredentialRepository(session).get_by_id(credential_id)
            if model is None:
                return
            model.auth_error = error
            model.auth_error_at = self.now()
        logger.warning(f"Channel credential {credential_id} marked with auth error: {error}")

    async def reauthenticate(
        self,
        credential_id: UUID,
        session_data: str | None = None,
        user_info: dict[str, Any] | None = None,
    ) -> ChannelCredential:
        """Clear the auth error after a successful login."""
        async with self._transaction() as session:
            repo = ChannelCredentialRepository(session)
            model = await repo.get_by_id(credential_id)
            if model is None:
                raise ChannelUnavailable("Channel credential is not available")
            model.auth_error = None
            model.auth_error_at = None
            if session_data is not None:
                model.session_data = session_data
            if user_info is not None:
                model.user_info = dict(user_info)
            model = await repo.update(model)
            return _to_credential(model)

    async def mark_credential_used(self, credential_id: UUID) -> None:
        async with self._transaction() as session:
            model = await ChannelCredentialRepository(session).get_by_id(credential_id)
            if model is not None:
                model.last_used_at = self.now()
