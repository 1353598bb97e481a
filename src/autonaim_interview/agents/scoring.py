"""
Scoring engine.

Computes a numeric score and a detailed score from transcript features and
asks the LLM for a natural-language analysis. The numbers depend only on
the structured conversation content, so re-scoring an unchanged snapshot
always yields the same score.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from autonaim_interview.config import Settings, get_settings
from autonaim_interview.errors import LLMProviderError
from autonaim_interview.models.llm_client import LLMClient, LLMClientBase, Message as LLMMessage
from autonaim_interview.orchestrator.schemas import (
    ConversationSnapshot,
    ConversationStatus,
    Message,
    ScoringResult,
    SenderRole,
)

logger = logging.getLogger(__name__)

FEATURES_VERSION = "1"

RECOMMENDED = "RECOMMENDED"
NOT_RECOMMENDED = "NOT_RECOMMENDED"

_WORD = re.compile(r"\w+", re.UNICODE)

WEIGHTS = {
    "completeness": 0.35,
    "depth": 0.25,
    "relevance": 0.25,
    "criteria": 0.15,
}


class TranscriptFeatures(BaseModel):
    """Structured signals extracted from a conversation."""

    questions_asked: int = Field(default=0, description="Bot questions that expected an answer")
    questions_answered: int = Field(default=0, description="Questions followed by a candidate answer")
    completeness: float = Field(default=0.0, ge=0.0, le=1.0)
    depth: float = Field(default=0.0, ge=0.0, le=1.0, description="Mean answer length signal")
    relevance: float = Field(default=0.0, ge=0.0, le=1.0, description="Share of on-topic answers")
    criteria: float | None = Field(default=None, ge=0.0, le=1.0, description="Share of role criteria covered")
    pending_transcripts: int = Field(default=0, description="Voice answers still awaiting transcription")


def _words(text: str) -> list[str]:
    return [w.lower() for w in _WORD.findall(text)]


class ScoringEngineBase(ABC):
    """Abstract base class for scoring engines."""

    @abstractmethod
    async def score(self, snapshot: ConversationSnapshot) -> ScoringResult:
        """
        Score a conversation snapshot.

        Args:
            snapshot: Conversation with its ordered history.

        Returns:
            A scoring pass.
        """
        ...


class ScoringEngine(ScoringEngineBase):
    """Feature-based scoring with an LLM-written analysis."""

    ANALYSIS_PROMPT = """You are assessing a candidate after a written screening interview.

Position: {position_title}
Role criteria: {criteria}
Computed score: {detailed_score}/100 ({recommendation})

Transcript:
{transcript}

Write a short analysis (3-5 sentences) of the candidate's answers: strengths, gaps,
and anything a recruiter should follow up on. Be factual and neutral. Plain text only."""

    DEPTH_WORDS = 40
    RELEVANT_MIN_WORDS = 8

    def __init__(
        self,
        llm_client: LLMClientBase | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the scoring engine.

        Args:
            llm_client: LLM client for the analysis text. Creates default if None.
            settings: Application settings (thresholds).
        """
        settings = settings or get_settings()
        self._llm_client = llm_client or LLMClient()
        self._recommend_threshold = settings.recommend_threshold

    def _criteria(self, snapshot: ConversationSnapshot) -> list[str]:
        raw = snapshot.conversation.metadata.get("criteria") or []
        if isinstance(raw, str):
            raw = [part for part in re.split(r"[,\n;]", raw)]
        return sorted({str(c).strip().lower() for c in raw if str(c).strip()})

    def _pairs(self, snapshot: ConversationSnapshot) -> list[tuple[Message, list[Message]]]:
        """Bot questions with the candidate messages that followed them."""
        pairs: list[tuple[Message, list[Message]]] = []
        for message in snapshot.messages:
            if message.sender is SenderRole.BOT:
                pairs.append((message, []))
            elif message.sender is SenderRole.CANDIDATE and pairs:
                pairs[-1][1].append(message)
        # The closing message of a completed interview asks nothing.
        if snapshot.conversation.status is ConversationStatus.COMPLETED and pairs and not pairs[-1][1]:
            pairs.pop()
        return pairs

    def extract_features(self, snapshot: ConversationSnapshot) -> TranscriptFeatures:
        """Compute deterministic transcript features."""
        pairs = self._pairs(snapshot)
        answers: list[tuple[Message, str]] = []
        answered = 0
        pending = 0
        for question, replies in pairs:
            texts = [r.text for r in replies if r.text.strip()]
            pending += sum(1 for r in replies if r.awaiting_transcript)
            if texts:
                answered += 1
                answers.append((question, " ".join(texts)))

        asked = len(pairs)
        completeness = answered / asked if asked else 0.0

        if answers:
            depth = sum(min(1.0, len(_words(text)) / self.DEPTH_WORDS) for _, text in answers) / len(answers)
            relevant = 0
            for question, text in answers:
                answer_words = _words(text)
                question_terms = {w for w in _words(question.text) if len(w) >= 4}
                if len(answer_words) >= self.RELEVANT_MIN_WORDS or question_terms & set(answer_words):
                    relevant += 1
            relevance = relevant / len(answers)
        else:
            depth = relevance = 0.0

        criteria = self._criteria(snapshot)
        coverage: float | None = None
        if criteria:
            candidate_text = " ".join(
                m.text.lower() for m in snapshot.messages if m.sender is SenderRole.CANDIDATE
            )
            coverage = sum(1 for c in criteria if c in candidate_text) / len(criteria)

        return TranscriptFeatures(
            questions_asked=asked,
            questions_answered=answered,
            completeness=round(completeness, 4),
            depth=round(depth, 4),
            relevance=round(relevance, 4),
            criteria=round(coverage, 4) if coverage is not None else None,
            pending_transcripts=pending,
        )

    def compute_scores(self, features: TranscriptFeatures) -> tuple[int, int]:
        """
        Map features to (score 1-5, detailed score 0-100).

        Without role criteria their weight is spread over the other features.
        """
        values = {
            "completeness": features.completeness,
            "depth": features.depth,
            "relevance": features.relevance,
            "criteria": features.criteria,
        }
        weights = {k: w for k, w in WEIGHTS.items() if values[k] is not None}
        total = sum(weights.values())
        detailed = round(100 * sum(weights[k] * values[k] for k in weights) / total)
        detailed = max(0, min(100, detailed))
        score = min(5, 1 + detailed // 20)
        return score, detailed

    def snapshot_hash(self, snapshot: ConversationSnapshot) -> str:
        """Hash of the structured inputs the numeric score depends on."""
        material = {
            "version": FEATURES_VERSION,
            "conversation": str(snapshot.conversation.id),
            "status": snapshot.conversation.status.value,
            "criteria": self._criteria(snapshot),
            "messages": [
                [m.sender.value, m.content_type.value, m.text, m.awaiting_transcript] for m in snapshot.messages
            ],
        }
        encoded = json.dumps(material, ensure_ascii=False, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def _transcript(self, snapshot: ConversationSnapshot, max_chars: int = 6000) -> str:
        lines = []
        for m in snapshot.messages:
            speaker = "Candidate" if m.sender is SenderRole.CANDIDATE else "Recruiter"
            text = m.text if m.text else "[voice message, not transcribed yet]"
            lines.append(f"{speaker}: {text}")
        transcript = "\n".join(lines)
        return transcript[-max_chars:]

    def _template_analysis(self, features: TranscriptFeatures, detailed: int) -> str:
        parts = [
            f"The candidate answered {features.questions_answered} of {features.questions_asked} questions.",
            f"Answer depth {features.depth:.0%}, on-topic share {features.relevance:.0%}.",
        ]
        if features.criteria is not None:
            parts.append(f"Role criteria coverage {features.criteria:.0%}.")
        if features.pending_transcripts:
            parts.append(f"{features.pending_transcripts} voice answer(s) are still being transcribed.")
        parts.append(f"Overall detailed score: {detailed}/100.")
        return " ".join(parts)

    async def score(self, snapshot: ConversationSnapshot) -> ScoringResult:
        """
        Score a conversation snapshot.

        Args:
            snapshot: Conversation with its ordered history.

        Returns:
            A new scoring pass (not yet persisted).
        """
        features = self.extract_features(snapshot)
        score, detailed = self.compute_scores(features)
        recommendation = RECOMMENDED if detailed >= self._recommend_threshold else NOT_RECOMMENDED

        prompt = self.ANALYSIS_PROMPT.format(
            position_title=snapshot.conversation.metadata.get("position_title") or "not specified",
            criteria=", ".join(self._criteria(snapshot)) or "none specified",
            detailed_score=detailed,
            recommendation=recommendation,
            transcript=self._transcript(snapshot),
        )
        try:
            response = await self._llm_client.chat([LLMMessage(role="user", content=prompt)], temperature=0.3)
            analysis = response.content.strip()
        except LLMProviderError as e:
            logger.warning(f"Scoring analysis failed, using template: {e}")
            analysis = ""
        if not analysis:
            analysis = self._template_analysis(features, detailed)

        logger.info(
            f"Scored conversation {snapshot.conversation.id}: {score}/5 ({detailed}/100, {recommendation})"
        )
        return ScoringResult(
            conversation_id=snapshot.conversation.id,
            channel=snapshot.conversation.channel,
            score=score,
            detailed_score=detailed,
            analysis=analysis,
            recommendation=recommendation,
            snapshot_hash=self.snapshot_hash(snapshot),
            features={
                k: v
                for k, v in features.model_dump().items()
                if isinstance(v, (int, float)) and not isinstance(v, bool)
            },
        )
