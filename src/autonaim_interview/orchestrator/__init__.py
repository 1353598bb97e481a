"""
Orchestrator module for conversation state, turn generation and the idle sweep.
"""

from autonaim_interview.orchestrator.schemas import (
    CanonicalMessage,
    Channel,
    ChannelCapabilities,
    ContentType,
    Conversation,
    ConversationStatus,
    Message,
    OutboundMessage,
    SenderRole,
    TurnChunk,
    TurnResult,
)
from autonaim_interview.orchestrator.state_machine import ConversationStateMachine
from autonaim_interview.orchestrator.sweeper import IdleSweeper
from autonaim_interview.orchestrator.turn_orchestrator import TurnOrchestrator

__all__ = [
    "CanonicalMessage",
    "Channel",
    "ChannelCapabilities",
    "ContentType",
    "Conversation",
    "ConversationStatus",
    "ConversationStateMachine",
    "IdleSweeper",
    "Message",
    "OutboundMessage",
    "SenderRole",
    "TurnChunk",
    "TurnOrchestrator",
    "TurnResult",
]
