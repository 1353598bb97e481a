"""
Agents that work on whole conversations outside of a live turn.
"""

from autonaim_interview.agents.invitation import Invitation, InvitationGenerator, StoredInvitation
from autonaim_interview.agents.scoring import ScoringEngine, ScoringEngineBase, TranscriptFeatures

__all__ = [
    "Invitation",
    "InvitationGenerator",
    "StoredInvitation",
    "ScoringEngine",
    "ScoringEngineBase",
    "TranscriptFeatures",
]
