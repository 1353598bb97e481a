"""
Pydantic schemas for the conversation engine.

Defines the canonical data model shared by the store, channel adapters,
state machine, turn orchestrator and scoring engine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def _now_utc() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    """Delivery surface a conversation is bound to."""

    WEB = "web"
    TELEGRAM = "telegram"


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation."""

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not ConversationStatus.ACTIVE


class SenderRole(str, Enum):
    """Author of a message."""

    CANDIDATE = "CANDIDATE"
    BOT = "BOT"
    ADMIN = "ADMIN"


class ContentType(str, Enum):
    """Kind of message content."""

    TEXT = "TEXT"
    VOICE = "VOICE"


class DeliveryStatus(str, Enum):
    """Outbound delivery state of a message."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Conversation(BaseModel):
    """One interview instance."""

    id: UUID = Field(default_factory=uuid4, description="Conversation identifier")
    channel: Channel = Field(..., description="Channel the conversation is bound to")
    candidate_ref: str = Field(..., description="Reference to the candidate (e.g. response id)")
    status: ConversationStatus = Field(default=ConversationStatus.ACTIVE, description="Lifecycle status")
    status_reason: str | None = Field(default=None, description="Why the conversation reached a terminal status")
    message_count: int = Field(default=0, ge=0, description="Number of messages in the log")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Free-form metadata blob")
    created_at: datetime = Field(default_factory=_now_utc, description="Creation time")
    updated_at: datetime = Field(default_factory=_now_utc, description="Last mutation time")

    @property
    def is_active(self) -> bool:
        return self.status is ConversationStatus.ACTIVE


class CanonicalMessage(BaseModel):
    """
    Channel-neutral message before it is written to the log.

    Channel adapters produce these from raw events; the turn orchestrator
    output is converted into one before the reply is appended.
    """

    sender: SenderRole = Field(..., description="Author of the message")
    content_type: ContentType = Field(default=ContentType.TEXT, description="Content kind")
    content: str = Field(default="", description="Text content or a placeholder for binary content")
    file_id: str | None = Field(default=None, description="Reference to stored binary content")
    voice_duration: int | None = Field(default=None, description="Voice length in seconds")
    external_message_id: str | None = Field(default=None, description="Message id in the external channel")
    channel: Channel | None = Field(default=None, description="Channel the message travelled through")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Additional message metadata")


class Message(BaseModel):
    """One immutable entry in a conversation's message log."""

    id: UUID = Field(default_factory=uuid4, description="Message identifier")
    conversation_id: UUID = Field(..., description="Owning conversation")
    sequence: int = Field(..., ge=0, description="Position in the conversation log")
    sender: SenderRole
    content_type: ContentType = ContentType.TEXT
    content: str = ""
    file_id: str | None = None
    voice_duration: int | None = None
    voice_transcript: str | None = Field(default=None, description="Transcript written back for voice content")
    external_message_id: str | None = None
    channel: Channel | None = None
    delivery_status: DeliveryStatus | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now_utc)

    @property
    def text(self) -> str:
        """Best textual form of the message (transcript for voice)."""
        if self.content_type is ContentType.VOICE:
            return self.voice_transcript or ""
        return self.content

    @property
    def awaiting_transcript(self) -> bool:
        return self.content_type is ContentType.VOICE and self.voice_transcript is None


class ChannelCapabilities(BaseModel):
    """What a channel can do with a generated turn."""

    streaming: bool = Field(default=False, description="Replies are emitted as token deltas")
    voice_input: bool = Field(default=False, description="Channel accepts voice notes")
    max_message_chars: int = Field(default=4096, description="Longest message the transport accepts")


class OutboundMessage(BaseModel):
    """The turn orchestrator's reply."""

    content: str = Field(..., description="Reply text")
    completes_interview: bool = Field(default=False, description="Model or policy concluded the interview")
    is_fallback: bool = Field(default=False, description="Deterministic fallback used after provider failure")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Tool calls, model name, attempts")

    def to_canonical(self, channel: Channel | None = None) -> CanonicalMessage:
        metadata = dict(self.metadata)
        if self.is_fallback:
            metadata["fallback"] = True
        return CanonicalMessage(
            sender=SenderRole.BOT,
            content_type=ContentType.TEXT,
            content=self.content,
            channel=channel,
            metadata=metadata,
        )


class TurnChunk(BaseModel):
    """
    One unit emitted by a streamed turn.

    Delta chunks carry text only. The last chunk carries the finished
    reply and, once committed by the state machine, the stored messages.
    """

    delta: str = ""
    final: OutboundMessage | None = None
    inbound: Message | None = None
    reply: Message | None = None

    @property
    def is_final(self) -> bool:
        return self.final is not None


class TurnResult(BaseModel):
    """Outcome of a committed turn."""

    inbound: Message | None = Field(default=None, description="Stored candidate message (None for follow-up replies)")
    reply: Message = Field(..., description="Stored bot reply")
    outbound: OutboundMessage = Field(..., description="Reply as produced by the turn orchestrator")
    status: ConversationStatus = Field(default=ConversationStatus.ACTIVE, description="Status after the turn")


class ConversationRef(BaseModel):
    """Resolved identity of a channel participant."""

    conversation_id: UUID
    channel: Channel


class TokenBinding(BaseModel):
    """Maps an externally issued access token to a conversation."""

    conversation_id: UUID
    expires_at: datetime
    revoked_at: datetime | None = None
    pin_code: str | None = None


class IssuedToken(BaseModel):
    """A freshly issued access token (the raw token is never stored)."""

    token: str
    pin_code: str
    conversation_id: UUID
    expires_at: datetime


class ScoringResult(BaseModel):
    """Outcome of one scoring pass."""

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    channel: Channel | None = Field(default=None, description="Channel the pass was computed for")
    score: int = Field(..., ge=1, le=5, description="Coarse score (1 = no fit, 5 = excellent)")
    detailed_score: int = Field(..., ge=0, le=100, description="Granular score")
    analysis: str = Field(default="", description="Natural-language analysis")
    recommendation: str = Field(default="", description="RECOMMENDED or NOT_RECOMMENDED")
    snapshot_hash: str = Field(default="", description="Hash of the structured inputs that were scored")
    features: dict[str, float] = Field(default_factory=dict, description="Feature values behind the score")
    created_at: datetime = Field(default_factory=_now_utc)


class ConversationSnapshot(BaseModel):
    """Conversation plus its full ordered history at one point in time."""

    conversation: Conversation
    messages: list[Message] = Field(default_factory=list)


class ConversationView(BaseModel):
    """Read contract consumed by presentation layers."""

    id: UUID
    channel: Channel
    status: ConversationStatus
    candidate_ref: str
    message_count: int
    created_at: datetime
    updated_at: datetime
    latest_scoring: ScoringResult | None = None


class ChannelCredential(BaseModel):
    """Per-workspace login for a messaging-bot channel."""

    id: UUID = Field(default_factory=uuid4)
    workspace_id: str
    channel: Channel = Channel.TELEGRAM
    phone: str | None = None
    user_info: dict[str, Any] = Field(default_factory=dict)
    session_data: str = Field(default="", repr=False, description="Opaque secret used by the transport")
    is_active: bool = True
    auth_error: str | None = None
    auth_error_at: datetime | None = None
    last_used_at: datetime | None = None
    in_use_by: str | None = None
    lease_expires_at: datetime | None = None

    @property
    def is_usable(self) -> bool:
        """A credential with an auth error stays unusable until re-authenticated."""
        return self.is_active and self.auth_error is None
