"""
Auxiliary tools the model may call while producing a turn.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from autonaim_interview.models.llm_client import ToolCall
from autonaim_interview.orchestrator.prompts import DEFAULT_ORGANIZATIONAL_QUESTIONS
from autonaim_interview.orchestrator.schemas import Conversation

if TYPE_CHECKING:
    from autonaim_interview.db.store import SessionStore

logger = logging.getLogger(__name__)

END_INTERVIEW = "end_interview"
GET_QUESTION_BANK = "get_question_bank"
LOOKUP_SCORE = "lookup_score"

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": END_INTERVIEW,
            "description": "Conclude the interview once all topics are covered or the candidate wants to stop.",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason": {"type": "string", "description": "Why the interview ends"},
                },
                "required": ["reason"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": GET_QUESTION_BANK,
            "description": "Get the organizational and technical questions to cover in this interview.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    {
        "type": "function",
        "function": {
            "name": LOOKUP_SCORE,
            "description": "Look up the most recent scoring pass for this conversation, if any.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
]


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [line.strip("-• ").strip() for line in value.splitlines() if line.strip("-• ").strip()]
    return [str(item) for item in value]


class InterviewTools:
    """Executes tool calls against conversation state."""

    def __init__(self, store: SessionStore | None = None) -> None:
        self._store = store

    @property
    def definitions(self) -> list[dict[str, Any]]:
        return TOOL_DEFINITIONS

    async def execute(self, call: ToolCall, conversation: Conversation | None) -> str:
        """
        Run a tool and return its result as text for the model.

        Unknown tools produce an error string rather than an exception so that
        a confused model cannot break the turn.
        """
        if call.name == END_INTERVIEW:
            return json.dumps({"ok": True, "reason": call.arguments.get("reason", "")})
        if call.name == GET_QUESTION_BANK:
            return json.dumps(self.question_bank(conversation), ensure_ascii=False)
        if call.name == LOOKUP_SCORE:
            return json.dumps(await self.lookup_score(conversation), ensure_ascii=False)
        logger.warning(f"Model requested unknown tool: {call.name}")
        return json.dumps({"error": f"unknown tool {call.name}"})

    def question_bank(self, conversation: Conversation | None) -> dict[str, list[str]]:
        metadata = conversation.metadata if conversation else {}
        organizational = _as_list(metadata.get("organizational_questions")) or list(DEFAULT_ORGANIZATIONAL_QUESTIONS)
        technical = _as_list(metadata.get("technical_questions"))
        return {"organizational": organizational, "technical": technical}

    async def lookup_score(self, conversation: Conversation | None) -> dict[str, Any]:
        if conversation is None or self._store is None:
            return {"available": False}
        result = await self._store.latest_scoring(conversation.id)
        if result is None:
            return {"available": False}
        return {
            "available": True,
            "score": result.score,
            "detailed_score": result.detailed_score,
            "recommendation": result.recommendation,
        }
