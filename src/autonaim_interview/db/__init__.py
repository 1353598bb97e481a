"""
Database module for persistence.

Provides SQLAlchemy models, the repository layer and the Session Store.
"""

from autonaim_interview.db.models import (
    Base,
    ChannelCredentialModel,
    ConversationModel,
    InterviewSessionModel,
    JobEventModel,
    MessageModel,
    ScoringResultModel,
)
from autonaim_interview.db.repository import (
    ChannelCredentialRepository,
    ConversationRepository,
    InterviewSessionRepository,
    JobEventRepository,
    MessageRepository,
    ScoringResultRepository,
)
from autonaim_interview.db.store import SessionStore

__all__ = [
    "Base",
    "ChannelCredentialModel",
    "ConversationModel",
    "InterviewSessionModel",
    "JobEventModel",
    "MessageModel",
    "ScoringResultModel",
    "ChannelCredentialRepository",
    "ConversationRepository",
    "InterviewSessionRepository",
    "JobEventRepository",
    "MessageRepository",
    "ScoringResultRepository",
    "SessionStore",
]
