"""
Error taxonomy for the interview engine.

Every failure the engine raises belongs to one of five families: validation,
access, transient infrastructure, conversation state, and channel health.
Channel adapters collapse these into a small set of outcome codes so that no
raw provider error ever reaches a candidate.
"""

from __future__ import annotations

from typing import Any


class InterviewEngineError(Exception):
    """Base class for all engine errors."""

    #: Externally visible outcome code used at channel boundaries.
    code: str = "internal"


# Validation


class ValidationFailure(InterviewEngineError):
    """Input rejected synchronously at a boundary."""

    code = "invalid"


class SchemaViolation(ValidationFailure):
    """A job payload does not match the schema registered for its event name."""

    def __init__(self, event_name: str, details: Any = None) -> None:
        super().__init__(f"Payload rejected for event '{event_name}'")
        self.event_name = event_name
        self.details = details


class InvalidInbound(ValidationFailure):
    """A raw channel event could not be translated into a canonical message."""


# Access


class AccessDenied(InterviewEngineError):
    """Token or channel identity did not resolve.

    Deliberately does not say whether the conversation exists.
    """

    code = "not_found"

    def __init__(self, message: str = "Interview not found") -> None:
        super().__init__(message)


class ConversationNotFound(AccessDenied):
    """No conversation with the requested id."""


# Transient infrastructure


class TransientError(InterviewEngineError):
    """Failure that may succeed on retry."""

    code = "unavailable"


class LLMProviderError(TransientError):
    """The model provider failed or timed out."""

    def __init__(self, message: str, status_code: int | None = None, transient: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class DeliveryFailed(TransientError):
    """Outbound delivery through a channel transport failed."""


class TranscriptionUnavailable(TransientError):
    """The speech-to-text backend could not produce a transcript."""


# Conversation state


class StateConflict(InterviewEngineError):
    """Operation conflicts with the conversation's current state."""

    code = "closed"


class ConversationClosed(StateConflict):
    """The conversation is COMPLETED or CANCELLED."""

    def __init__(self, conversation_id: Any, status: Any = None) -> None:
        super().__init__(f"Conversation {conversation_id} is closed ({status})")
        self.conversation_id = conversation_id
        self.status = status


class InvalidTransition(StateConflict):
    """Requested status change violates ACTIVE -> {COMPLETED, CANCELLED}."""

    def __init__(self, conversation_id: Any, current: Any, target: Any) -> None:
        super().__init__(f"Conversation {conversation_id}: cannot move from {current} to {target}")
        self.conversation_id = conversation_id
        self.current = current
        self.target = target


class TurnInProgress(StateConflict):
    """Another turn for the same conversation is still running."""

    code = "busy"

    def __init__(self, conversation_id: Any) -> None:
        super().__init__(f"A turn is already in progress for conversation {conversation_id}")
        self.conversation_id = conversation_id


class TurnCancelled(StateConflict):
    """The client abandoned a live turn; nothing was committed."""

    code = "cancelled"

    def __init__(self, conversation_id: Any) -> None:
        super().__init__(f"Turn for conversation {conversation_id} was cancelled")
        self.conversation_id = conversation_id


# Channel health


class ChannelUnavailable(InterviewEngineError):
    """Channel credential is unusable (auth error, or leased elsewhere)."""

    code = "unavailable"


def outcome_code(error: BaseException) -> str:
    """Map any exception to the closed set of externally visible outcome codes."""
    if isinstance(error, InterviewEngineError):
        return error.code
    return "internal"
