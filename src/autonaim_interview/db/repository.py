"""
Repository pattern for database operations.

Provides a clean abstraction over SQLAlchemy for the engine's tables.
Repositories never commit; the caller owns the transaction.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from autonaim_interview.db.models import (
    Base,
    ChannelCredentialModel,
    ConversationModel,
    InterviewSessionModel,
    JobEventModel,
    MessageModel,
    ScoringResultModel,
)

T = TypeVar("T", bound=Base)


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common CRUD operations."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize the repository.

        Args:
            session: SQLAlchemy async session.
        """
        self._session = session

    @property
    @abstractmethod
    def _model_class(self) -> type[T]:
        """Get the model class for this repository."""
        ...

    async def get_by_id(self, entity_id: Any) -> T | None:
        """
        Get an entity by its primary key.

        Args:
            entity_id: The entity's primary key.

        Returns:
            The entity if found, None otherwise.
        """
        return await self._session.get(self._model_class, entity_id)

    async def create(self, entity: T) -> T:
        """
        Create a new entity.

        Args:
            entity: The entity to create.

        Returns:
            The created entity.
        """
        self._session.add(entity)
        await self._session.flush()
        await self._session.refresh(entity)
        return entity

    async def update(self, entity: T) -> T:
        """
        Flush pending changes of an entity.

        Args:
            entity: The entity to update.

        Returns:
            The updated entity.
        """
        await self._session.flush()
        await self._session.refresh(entity)
        return entity


class ConversationRepository(BaseRepository[ConversationModel]):
    """Repository for conversation operations."""

    @property
    def _model_class(self) -> type[ConversationModel]:
        """Get the model class."""
        return ConversationModel

    async def reserve_sequences(self, conversation_id: UUID, count: int, now: datetime) -> int | None:
        """
        Atomically bump the message count of an ACTIVE conversation.

        The row-level write lock taken by the UPDATE serializes concurrent
        appenders on the same conversation until their transaction ends.

        Args:
            conversation_id: Conversation to append to.
            count: Number of messages about to be inserted.
            now: Timestamp stamped as updated_at.

        Returns:
            The first reserved sequence number, or None when the
            conversation is missing or not ACTIVE.
        """
        stmt = (
            update(ConversationModel)
            .where(
                ConversationModel.id == conversation_id,
                ConversationModel.status == "ACTIVE",
            )
            .values(
                message_count=ConversationModel.message_count + count,
                updated_at=now,
            )
            .returning(ConversationModel.message_count)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        new_count = result.scalar_one_or_none()
        if new_count is None:
            return None
        return new_count - count

    async def set_terminal_status(
        self,
        conversation_id: UUID,
        status: str,
        reason: str | None,
        now: datetime,
    ) -> bool:
        """
        Move an ACTIVE conversation to a terminal status.

        Returns:
            True when the row was ACTIVE and has been updated.
        """
        stmt = (
            update(ConversationModel)
            .where(
                ConversationModel.id == conversation_id,
                ConversationModel.status == "ACTIVE",
            )
            .values(status=status, status_reason=reason, updated_at=now)
            .returning(ConversationModel.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def try_turn_lease(
        self,
        conversation_id: UUID,
        owner: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Claim the turn lease of a conversation.

        Succeeds when no turn is running, the running turn's lease has
        lapsed, or the same owner already holds it. Does not touch
        updated_at, so claiming a turn is not activity.
        """
        stmt = (
            update(ConversationModel)
            .where(
                ConversationModel.id == conversation_id,
                or_(
                    ConversationModel.turn_owner.is_(None),
                    ConversationModel.turn_owner == owner,
                    ConversationModel.turn_lease_until < now,
                ),
            )
            .values(turn_owner=owner, turn_lease_until=expires_at)
            .returning(ConversationModel.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def release_turn_lease(self, conversation_id: UUID, owner: str) -> None:
        stmt = (
            update(ConversationModel)
            .where(
                ConversationModel.id == conversation_id,
                ConversationModel.turn_owner == owner,
            )
            .values(turn_owner=None, turn_lease_until=None)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def update_metadata(self, conversation_id: UUID, values: dict[str, Any], now: datetime) -> None:
        """Merge values into the conversation metadata blob."""
        conversation = await self.get_by_id(conversation_id)
        if conversation is None:
            return
        merged = dict(conversation.metadata_ or {})
        merged.update(values)
        conversation.metadata_ = merged
        conversation.updated_at = now
        await self._session.flush()

    async def get_by_candidate_ref(self, candidate_ref: str, channel: str) -> ConversationModel | None:
        """Most recent conversation for a candidate on one channel."""
        stmt = (
            select(ConversationModel)
            .where(
                ConversationModel.candidate_ref == candidate_ref,
                ConversationModel.channel == channel,
            )
            .order_by(ConversationModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_chat_id(self, chat_id: str) -> ConversationModel | None:
        """Active messaging-bot conversation bound to an external chat id."""
        stmt = (
            select(ConversationModel)
            .where(
                ConversationModel.channel == "telegram",
                ConversationModel.status == "ACTIVE",
                ConversationModel.metadata_["chat_id"].as_string() == chat_id,
            )
            .order_by(ConversationModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_idle(self, cutoff: datetime, limit: int = 100) -> list[ConversationModel]:
        """
        List ACTIVE conversations with no activity since the cutoff.

        Args:
            cutoff: Conversations updated before this instant are idle.
            limit: Maximum number to return.

        Returns:
            Idle conversations, oldest first.
        """
        stmt = (
            select(ConversationModel)
            .where(
                ConversationModel.status == "ACTIVE",
                ConversationModel.updated_at < cutoff,
            )
            .order_by(ConversationModel.updated_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class MessageRepository(BaseRepository[MessageModel]):
    """Repository for the message log."""

    @property
    def _model_class(self) -> type[MessageModel]:
        """Get the model class."""
        return MessageModel

    async def list_for_conversation(
        self,
        conversation_id: UUID,
        limit: int | None = None,
    ) -> list[MessageModel]:
        """
        Get the messages of a conversation in append order.

        Args:
            conversation_id: The conversation's UUID.
            limit: Keep only the most recent N messages.

        Returns:
            Messages ordered by sequence.
        """
        stmt = select(MessageModel).where(MessageModel.conversation_id == conversation_id)
        if limit is not None:
            stmt = stmt.order_by(MessageModel.sequence.desc()).limit(limit)
            result = await self._session.execute(stmt)
            return list(reversed(result.scalars().all()))
        stmt = stmt.order_by(MessageModel.sequence)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_by_external_id(self, conversation_id: UUID, external_message_id: str) -> MessageModel | None:
        """Find a message by its id in the external channel."""
        stmt = select(MessageModel).where(
            MessageModel.conversation_id == conversation_id,
            MessageModel.external_message_id == external_message_id,
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_reply_to(self, conversation_id: UUID, message_id: UUID) -> MessageModel | None:
        """Find a bot message produced in reply to the given message."""
        stmt = select(MessageModel).where(
            MessageModel.conversation_id == conversation_id,
            MessageModel.sender == "BOT",
        )
        result = await self._session.execute(stmt)
        target = str(message_id)
        for message in result.scalars().all():
            if (message.metadata_ or {}).get("in_reply_to") == target:
                return message
        return None


class InterviewSessionRepository(BaseRepository[InterviewSessionModel]):
    """Repository for token bindings."""

    @property
    def _model_class(self) -> type[InterviewSessionModel]:
        """Get the model class."""
        return InterviewSessionModel

    async def get_by_pin(self, pin_code: str, now: datetime) -> InterviewSessionModel | None:
        """Unexpired, unrevoked binding carrying the pin code."""
        stmt = (
            select(InterviewSessionModel)
            .where(
                InterviewSessionModel.pin_code == pin_code,
                InterviewSessionModel.revoked_at.is_(None),
                InterviewSessionModel.expires_at > now,
            )
            .order_by(InterviewSessionModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class ScoringResultRepository(BaseRepository[ScoringResultModel]):
    """Repository for scoring passes."""

    @property
    def _model_class(self) -> type[ScoringResultModel]:
        """Get the model class."""
        return ScoringResultModel

    async def latest_for_conversation(self, conversation_id: UUID) -> ScoringResultModel | None:
        """Most recent scoring pass for a conversation."""
        stmt = (
            select(ScoringResultModel)
            .where(ScoringResultModel.conversation_id == conversation_id)
            .order_by(ScoringResultModel.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_conversation(self, conversation_id: UUID) -> list[ScoringResultModel]:
        """All scoring passes, oldest first."""
        stmt = (
            select(ScoringResultModel)
            .where(ScoringResultModel.conversation_id == conversation_id)
            .order_by(ScoringResultModel.created_at)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class ChannelCredentialRepository(BaseRepository[ChannelCredentialModel]):
    """Repository for messaging-bot credentials."""

    @property
    def _model_class(self) -> type[ChannelCredentialModel]:
        """Get the model class."""
        return ChannelCredentialModel

    async def get_for_workspace(self, workspace_id: str, channel: str = "telegram") -> ChannelCredentialModel | None:
        """Active credential of a workspace."""
        stmt = (
            select(ChannelCredentialModel)
            .where(
                ChannelCredentialModel.workspace_id == workspace_id,
                ChannelCredentialModel.channel == channel,
                ChannelCredentialModel.is_active.is_(True),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def try_lease(
        self,
        credential_id: UUID,
        owner: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Claim a credential for one adapter instance.

        Succeeds when the credential is free, its lease has lapsed, or the
        same owner already holds it.
        """
        stmt = (
            update(ChannelCredentialModel)
            .where(
                ChannelCredentialModel.id == credential_id,
                or_(
                    ChannelCredentialModel.in_use_by.is_(None),
                    ChannelCredentialModel.in_use_by == owner,
                    ChannelCredentialModel.lease_expires_at < now,
                ),
            )
            .values(in_use_by=owner, lease_expires_at=expires_at)
            .returning(ChannelCredentialModel.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def release_lease(self, credential_id: UUID, owner: str) -> None:
        """Release a lease held by the owner."""
        stmt = (
            update(ChannelCredentialModel)
            .where(
                ChannelCredentialModel.id == credential_id,
                ChannelCredentialModel.in_use_by == owner,
            )
            .values(in_use_by=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)


class JobEventRepository(BaseRepository[JobEventModel]):
    """Repository for the job queue."""

    @property
    def _model_class(self) -> type[JobEventModel]:
        """Get the model class."""
        return JobEventModel

    async def due_ids(self, now: datetime, limit: int, names: Sequence[str]) -> list[UUID]:
        """Ids of jobs ready to run (pending, or running with an expired lock) among the given events."""
        stmt = (
            select(JobEventModel.id)
            .where(
                JobEventModel.name.in_(list(names)),
                or_(
                    and_(JobEventModel.status == "PENDING", JobEventModel.run_at <= now),
                    and_(JobEventModel.status == "RUNNING", JobEventModel.locked_until < now),
                )
            )
            .order_by(JobEventModel.run_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def claim(self, job_id: UUID, worker_id: str, now: datetime, locked_until: datetime) -> bool:
        """
        Atomically move a due job to RUNNING for one worker.

        Returns:
            False when another worker claimed it first.
        """
        stmt = (
            update(JobEventModel)
            .where(
                JobEventModel.id == job_id,
                or_(
                    and_(JobEventModel.status == "PENDING", JobEventModel.run_at <= now),
                    and_(JobEventModel.status == "RUNNING", JobEventModel.locked_until < now),
                ),
            )
            .values(
                status="RUNNING",
                attempts=JobEventModel.attempts + 1,
                locked_by=worker_id,
                locked_until=locked_until,
                updated_at=now,
            )
            .returning(JobEventModel.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def list_by_status(self, status: str, limit: int = 100) -> list[JobEventModel]:
        """Jobs in one status, oldest first."""
        stmt = (
            select(JobEventModel)
            .where(JobEventModel.status == status)
            .order_by(JobEventModel.created_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
