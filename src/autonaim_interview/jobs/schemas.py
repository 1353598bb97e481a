"""
Typed payloads for background job events.

Each event name maps to exactly one payload schema. Payloads use camelCase
keys on the wire and are validated before a job is accepted.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_serializer
from pydantic.alias_generators import to_camel


REDACTED = "**********"


class JobPayload(BaseModel):
    """Base class for job payloads."""

    # Fields masked in the stored payload once the job is DONE or DEAD.
    secret_fields: ClassVar[tuple[str, ...]] = ()

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def redact(cls, wire: dict[str, Any]) -> dict[str, Any]:
        """Wire payload with secret values masked, for rows of finished jobs."""
        masked = {cls.model_fields[name].alias or name for name in cls.secret_fields}
        return {key: (REDACTED if key in masked else value) for key, value in wire.items()}


class VoiceTranscribePayload(JobPayload):
    """`voice.transcribe`: transcribe a stored voice message."""

    message_id: UUID = Field(..., description="Voice message to transcribe")
    file_id: str = Field(..., min_length=1, description="Stored audio file reference")


class IntegrationVerifyPayload(JobPayload):
    """`integration.verify`: check a messaging-bot credential against the provider."""

    integration_id: UUID = Field(..., description="Channel credential id")
    workspace_id: str = Field(..., min_length=1)


class CredentialsVerifyPayload(JobPayload):
    """`credentials.verify`: check job-board login credentials."""

    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$")
    password: SecretStr
    workspace_id: str = Field(..., min_length=1)

    secret_fields: ClassVar[tuple[str, ...]] = ("password",)

    @field_serializer("password")
    def _dump_password(self, value: SecretStr) -> str:
        return value.get_secret_value()


class InvitationGeneratePayload(JobPayload):
    """`invitation.generate`: prepare a web interview invitation for a response."""

    response_id: str = Field(..., min_length=1, description="Candidate response id")


class ConversationReplyPayload(JobPayload):
    """`conversation.reply`: answer a stored candidate message out-of-band."""

    conversation_id: UUID
    message_id: UUID


class InterviewScorePayload(JobPayload):
    """`interview.score`: run a scoring pass over a conversation."""

    conversation_id: UUID


class MessageDeliverPayload(JobPayload):
    """`message.deliver`: send a stored bot message through the process holding its channel."""

    conversation_id: UUID
    message_id: UUID


JOB_SCHEMAS: dict[str, type[JobPayload]] = {
    "voice.transcribe": VoiceTranscribePayload,
    "integration.verify": IntegrationVerifyPayload,
    "credentials.verify": CredentialsVerifyPayload,
    "invitation.generate": InvitationGeneratePayload,
    "conversation.reply": ConversationReplyPayload,
    "interview.score": InterviewScorePayload,
    "message.deliver": MessageDeliverPayload,
}


class JobStatus(str, Enum):
    """Delivery state of a job event."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    DEAD = "DEAD"


class RetryPolicy(BaseModel):
    """Exponential backoff with a bounded number of attempts."""

    max_attempts: int = Field(default=4, ge=1)
    base_delay_s: float = Field(default=5.0, ge=0)
    max_delay_s: float = Field(default=600.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Delay before the next try after the given (1-based) failed attempt."""
        return min(self.max_delay_s, self.base_delay_s * 2 ** max(attempt - 1, 0))


class JobHandle(BaseModel):
    """Caller-facing view of a queued job."""

    id: UUID
    name: str
    payload: dict[str, Any] = Field(default_factory=dict, repr=False)
    status: JobStatus
    attempts: int = 0
    max_attempts: int
    run_at: datetime
    last_error: str | None = None
