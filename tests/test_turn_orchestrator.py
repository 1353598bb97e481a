"""
Tests for prompt construction, retry/fallback behaviour and tool rounds.
"""

import asyncio
import json
from uuid import uuid4

import pytest
from conftest import FakeLLM, no_sleep, transient

from autonaim_interview.errors import LLMProviderError
from autonaim_interview.models.llm_client import LLMResponse, ToolCall
from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.prompts import FINAL_TURN_HINT, FIRST_TURN_HINT
from autonaim_interview.orchestrator.schemas import (
    ChannelCapabilities,
    Channel,
    ContentType,
    Conversation,
    Message,
    SenderRole,
)
from autonaim_interview.orchestrator.tools import GET_QUESTION_BANK, InterviewTools
from autonaim_interview.orchestrator.turn_orchestrator import VOICE_PENDING_PLACEHOLDER, TurnOrchestrator


def make_history(*texts: str) -> list[Message]:
    """Alternating candidate/bot history starting with the candidate."""
    conversation_id = uuid4()
    return [
        Message(
            conversation_id=conversation_id,
            sequence=i,
            sender=SenderRole.CANDIDATE if i % 2 == 0 else SenderRole.BOT,
            content=text,
        )
        for i, text in enumerate(texts)
    ]


@pytest.fixture
def build(settings, observability):
    def _build(llm, **overrides) -> TurnOrchestrator:
        return TurnOrchestrator(
            llm_client=llm,
            observability=observability,
            tools=InterviewTools(),
            settings=settings.model_copy(update=overrides) if overrides else settings,
            sleep=no_sleep,
        )

    return _build


class TestBuildPrompt:
    """Prompt window and token budget."""

    def test_first_turn_gets_greeting_hint(self, build) -> None:
        prompt = build(FakeLLM()).build_prompt(make_history("Hello"))

        assert prompt[0].role == "system"
        assert any(m.content == FIRST_TURN_HINT for m in prompt)
        assert prompt[-1].role == "user"
        assert prompt[-1].content == "Hello"

    def test_history_window_caps_messages(self, build) -> None:
        history = make_history(*[f"message {i}" for i in range(10)])

        prompt = build(FakeLLM(), history_window=4).build_prompt(history)

        turns = [m for m in prompt if m.role != "system"]
        assert [m.content for m in turns] == ["message 6", "message 7", "message 8", "message 9"]

    def test_token_budget_drops_oldest_but_keeps_newest(self, build) -> None:
        orchestrator = build(FakeLLM(), prompt_token_budget=1)
        history = make_history("old " * 200, "older reply " * 50, "newest " * 100)

        prompt = orchestrator.build_prompt(history)

        turns = [m for m in prompt if m.role != "system"]
        assert len(turns) == 1
        assert turns[0].content.startswith("newest")
        assert prompt[0].role == "system"

    def test_pending_voice_uses_placeholder(self, build) -> None:
        voice = Message(
            conversation_id=uuid4(),
            sequence=0,
            sender=SenderRole.CANDIDATE,
            content_type=ContentType.VOICE,
            content="[voice message]",
            file_id="v.ogg",
        )

        prompt = build(FakeLLM()).build_prompt([voice])

        assert prompt[-1].content == VOICE_PENDING_PLACEHOLDER

    def test_final_turn_hint(self, build) -> None:
        orchestrator = build(FakeLLM(), max_bot_questions=2)
        history = make_history("hi", "first question", "answer")

        assert orchestrator.is_final_turn(history)
        assert any(m.content == FINAL_TURN_HINT for m in orchestrator.build_prompt(history))


class TestGenerateTurn:
    """Batch generation with retries and fallback."""

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, build, observability: Observability) -> None:
        llm = FakeLLM([transient(), "What is your notice period?"])

        outbound = await build(llm).generate_turn(make_history("hi"))

        assert outbound.content == "What is your notice period?"
        assert not outbound.is_fallback
        assert outbound.metadata["attempts"] == 2
        assert observability.counters["llm.retry"] == 1

    @pytest.mark.asyncio
    async def test_non_transient_failure_falls_back_immediately(self, build, observability, settings) -> None:
        llm = FakeLLM([LLMProviderError("model not found", status_code=404, transient=False), "unused"])

        outbound = await build(llm).generate_turn(make_history("hi"))

        assert outbound.is_fallback
        assert outbound.content == settings.fallback_reply
        assert len(llm.calls) == 1
        assert observability.failures[0]["component"] == "turn_orchestrator"

    @pytest.mark.asyncio
    async def test_empty_reply_counts_as_failure(self, build) -> None:
        llm = FakeLLM(["   ", "Could you describe your last project?"])

        outbound = await build(llm).generate_turn(make_history("hi"))

        assert outbound.content == "Could you describe your last project?"
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_reply_truncated_to_channel_limit(self, build) -> None:
        llm = FakeLLM(["one two three four five six seven"])

        outbound = await build(llm).generate_turn(
            make_history("hi"), ChannelCapabilities(max_message_chars=16)
        )

        assert outbound.content == "one two three"

    @pytest.mark.asyncio
    async def test_tool_round_feeds_result_back(self, build) -> None:
        conversation = Conversation(
            channel=Channel.WEB,
            candidate_ref="r",
            metadata={"technical_questions": "- What is a race condition?\n- Explain indexes"},
        )
        llm = FakeLLM(
            [
                LLMResponse(content="", tool_calls=[ToolCall(name=GET_QUESTION_BANK)]),
                "When could you start?",
            ]
        )

        outbound = await build(llm).generate_turn(make_history("hi"), conversation=conversation)

        assert outbound.content == "When could you start?"
        assert outbound.metadata["tools"] == [GET_QUESTION_BANK]
        assert not outbound.completes_interview
        tool_message = llm.calls[1][-1]
        assert tool_message.role == "tool"
        bank = json.loads(tool_message.content)
        assert bank["technical"] == ["What is a race condition?", "Explain indexes"]
        assert bank["organizational"]


class TestStreamTurn:
    """Streaming generation."""

    @pytest.mark.asyncio
    async def test_deltas_then_final(self, build) -> None:
        llm = FakeLLM([["Tell ", "me ", "more."]])

        chunks = [c async for c in build(llm).stream_turn(make_history("hi"))]

        assert [c.delta for c in chunks[:-1]] == ["Tell ", "me ", "more."]
        assert chunks[-1].is_final
        assert chunks[-1].final.content == "Tell me more."

    @pytest.mark.asyncio
    async def test_failure_before_output_streams_fallback(self, build, settings) -> None:
        llm = FakeLLM([transient(), transient(), transient()])

        chunks = [c async for c in build(llm).stream_turn(make_history("hi"))]

        assert chunks[0].delta == settings.fallback_reply
        assert chunks[-1].final.is_fallback
        assert len(llm.calls) == settings.llm_max_retries + 1

    @pytest.mark.asyncio
    async def test_failure_after_output_is_raised(self, build, observability) -> None:
        llm = FakeLLM([["Partial", transient("reset")]])

        with pytest.raises(LLMProviderError):
            async for _ in build(llm).stream_turn(make_history("hi")):
                pass

        assert observability.failures[0]["phase"] == "mid_stream"

    @pytest.mark.asyncio
    async def test_streaming_capability_routes_generate_turn_through_stream(self, build) -> None:
        llm = FakeLLM([["Hello", " there"]])

        outbound = await build(llm).generate_turn(make_history("hi"), ChannelCapabilities(streaming=True))

        assert outbound.content == "Hello there"


class HangingLLM(FakeLLM):
    """Accepts every call and never answers."""

    async def chat(self, messages, temperature=0.7, max_tokens=None, tools=None, **kwargs) -> LLMResponse:
        self._next(messages)
        await asyncio.Event().wait()

    async def stream_chat(self, messages, temperature=0.7, max_tokens=None, tools=None, **kwargs):
        self._next(messages)
        await asyncio.Event().wait()
        yield


class TestTurnTimeout:
    """A model that never answers is cut off, retried, then replaced by the fallback."""

    @pytest.mark.asyncio
    async def test_hanging_batch_call_is_retried_then_falls_back(self, build, observability, settings) -> None:
        llm = HangingLLM()

        outbound = await asyncio.wait_for(
            build(llm, turn_timeout_s=0.05).generate_turn(make_history("hi")), timeout=5
        )

        assert outbound.is_fallback
        assert outbound.content == settings.fallback_reply
        assert len(llm.calls) == settings.llm_max_retries + 1
        assert observability.counters["llm.retry"] == settings.llm_max_retries
        assert "timed out" in observability.failures[0]["error"]

    @pytest.mark.asyncio
    async def test_hanging_stream_is_retried_then_streams_fallback(self, build, observability, settings) -> None:
        llm = HangingLLM()
        orchestrator = build(llm, turn_timeout_s=0.05)

        async def collect() -> list:
            return [c async for c in orchestrator.stream_turn(make_history("hi"))]

        chunks = await asyncio.wait_for(collect(), timeout=5)

        assert chunks[0].delta == settings.fallback_reply
        assert chunks[-1].final.is_fallback
        assert len(llm.calls) == settings.llm_max_retries + 1
        assert observability.counters["llm.retry"] == settings.llm_max_retries
