"""
LLM turn orchestrator.

Builds prompts from conversation history, invokes the language model in
batch or streaming mode, runs tool calls, and produces the next bot reply.
A reply is always produced: once retries are exhausted the configured
fallback message is returned and the failure is reported.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field

from autonaim_interview.config import Settings, get_settings
from autonaim_interview.errors import LLMProviderError
from autonaim_interview.models.llm_client import LLMClient, LLMClientBase
from autonaim_interview.models.llm_client import Message as LLMMessage
from autonaim_interview.observability import Observability
from autonaim_interview.orchestrator.prompts import (
    DEFAULT_CLOSING_MESSAGE,
    FINAL_TURN_HINT,
    FIRST_TURN_HINT,
    build_system_prompt,
)
from autonaim_interview.orchestrator.schemas import (
    ChannelCapabilities,
    Conversation,
    Message,
    OutboundMessage,
    SenderRole,
    TurnChunk,
)
from autonaim_interview.orchestrator.tools import END_INTERVIEW, InterviewTools

logger = logging.getLogger(__name__)

VOICE_PENDING_PLACEHOLDER = "[voice message, transcript pending]"


def estimate_tokens(text: str) -> int:
    """Rough token estimate (about four characters per token plus framing)."""
    return len(text) // 4 + 4


@dataclass
class _TurnState:
    """Accumulated output of one generation attempt."""

    parts: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    ends: bool = False

    @property
    def text(self) -> str:
        return "".join(self.parts)


class TurnOrchestrator:
    """
    Produces bot turns with the LLM.

    Streaming is used when the channel supports it; otherwise a single batch
    request is made. Tool calls are executed between model rounds.
    """

    MAX_TOOL_ROUNDS = 3

    def __init__(
        self,
        llm_client: LLMClientBase | None = None,
        observability: Observability | None = None,
        tools: InterviewTools | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the turn orchestrator.

        Args:
            llm_client: LLM client. Creates the default Ollama client if None.
            observability: Process observability state.
            tools: Tool executor exposed to the model.
            settings: Application settings.
            sleep: Sleep function used for retry backoff (overridable in tests).
        """
        settings = settings or get_settings()
        self._llm = llm_client or LLMClient()
        self._obs = observability or Observability()
        self._tools = tools or InterviewTools()
        self._sleep = sleep

        self._history_window = settings.history_window
        self._token_budget = settings.prompt_token_budget
        self._max_retries = settings.llm_max_retries
        self._backoff_s = settings.llm_retry_backoff_s
        self._timeout_s = settings.turn_timeout_s
        self._temperature = settings.llm_temperature
        self._max_bot_questions = settings.max_bot_questions
        self._fallback_reply = settings.fallback_reply

    # Prompt construction

    def is_final_turn(self, history: Sequence[Message]) -> bool:
        """The upcoming reply is the last one allowed for this interview."""
        bot_replies = sum(1 for m in history if m.sender is SenderRole.BOT)
        return bot_replies + 1 >= self._max_bot_questions

    def _to_llm_message(self, message: Message) -> LLMMessage:
        if message.sender is SenderRole.CANDIDATE:
            text = VOICE_PENDING_PLACEHOLDER if message.awaiting_transcript else message.text
            return LLMMessage(role="user", content=text)
        return LLMMessage(role="assistant", content=message.text)

    def build_prompt(
        self,
        history: Sequence[Message],
        conversation: Conversation | None = None,
    ) -> list[LLMMessage]:
        """
        Build the model prompt for the next reply.

        The history is capped to the configured window, then the oldest turns
        are dropped whole until the estimated size fits the token budget. The
        newest message is always kept. System messages are never dropped.

        Args:
            history: Ordered conversation history.
            conversation: Conversation whose metadata shapes the system prompt.

        Returns:
            Messages to send to the model.
        """
        system = [LLMMessage(role="system", content=build_system_prompt(conversation))]
        if not any(m.sender is SenderRole.BOT for m in history):
            system.append(LLMMessage(role="system", content=FIRST_TURN_HINT))
        if self.is_final_turn(history):
            system.append(LLMMessage(role="system", content=FINAL_TURN_HINT))

        window = list(history)[-self._history_window :] if self._history_window > 0 else []
        turns = [self._to_llm_message(m) for m in window]

        budget = self._token_budget - sum(estimate_tokens(m.content) for m in system)
        kept: list[LLMMessage] = []
        used = 0
        for message in reversed(turns):
            cost = estimate_tokens(message.content)
            if kept and used + cost > budget:
                break
            kept.append(message)
            used += cost
        kept.reverse()

        if len(kept) < len(history):
            logger.debug(f"Prompt history truncated to {len(kept)} of {len(history)} messages")
        return system + kept

    # Generation

    async def generate_turn(
        self,
        history: Sequence[Message],
        capabilities: ChannelCapabilities | None = None,
        conversation: Conversation | None = None,
    ) -> OutboundMessage:
        """
        Produce the next bot reply.

        Args:
            history: Ordered history ending with the message to answer.
            capabilities: Channel capabilities; streaming channels use the
                streaming API.
            conversation: Conversation the turn belongs to.

        Returns:
            The reply. Never raises for provider failures.
        """
        capabilities = capabilities or ChannelCapabilities()
        if capabilities.streaming:
            try:
                async with aclosing(self.stream_turn(history, capabilities, conversation)) as stream:
                    async for chunk in stream:
                        if chunk.final is not None:
                            return chunk.final
            except LLMProviderError as e:
                return self._fallback(e, conversation, attempts=1)
            return self._fallback(LLMProviderError("Stream ended without a reply"), conversation, attempts=1)

        prompt = self.build_prompt(history, conversation)
        final_turn = self.is_final_turn(history)
        last_error: LLMProviderError | None = None
        attempts = 0
        with self._obs.span("llm.turn", mode="batch") as span:
            while attempts <= self._max_retries:
                attempts += 1
                state = _TurnState()
                try:
                    async with asyncio.timeout(self._timeout_s):
                        await self._complete_with_tools(prompt, conversation, state)
                    if not state.text.strip() and not state.ends:
                        raise LLMProviderError("Model returned an empty reply")
                    span["attempts"] = attempts
                    return self._finish(state, final_turn, capabilities, attempts)
                except TimeoutError:
                    last_error = LLMProviderError(f"Turn timed out after {self._timeout_s}s")
                except LLMProviderError as e:
                    last_error = e
                    if not e.transient:
                        break
                logger.warning(f"Turn generation failed (attempt {attempts}): {last_error}")
                if attempts <= self._max_retries:
                    self._obs.increment("llm.retry")
                    await self._sleep(self._backoff_s * 2 ** (attempts - 1))
            span["attempts"] = attempts

        return self._fallback(last_error, conversation, attempts)

    async def stream_turn(
        self,
        history: Sequence[Message],
        capabilities: ChannelCapabilities | None = None,
        conversation: Conversation | None = None,
    ) -> AsyncIterator[TurnChunk]:
        """
        Stream the next bot reply as text deltas followed by a final chunk.

        Failures before the first delta are retried; after exhaustion the
        fallback reply is streamed. A failure after text has been emitted is
        raised as `LLMProviderError` so the caller can abort the turn.
        Closing the generator stops generation.
        """
        capabilities = capabilities or ChannelCapabilities(streaming=True)
        prompt = self.build_prompt(history, conversation)
        final_turn = self.is_final_turn(history)
        last_error: LLMProviderError | None = None
        attempts = 0

        while attempts <= self._max_retries:
            attempts += 1
            state = _TurnState()
            try:
                async with aclosing(self._stream_with_tools(prompt, conversation, state)) as deltas:
                    async for delta in deltas:
                        yield TurnChunk(delta=delta)
                if not state.text.strip() and not state.ends:
                    raise LLMProviderError("Model returned an empty reply")
                yield TurnChunk(final=self._finish(state, final_turn, capabilities, attempts))
                return
            except LLMProviderError as e:
                if state.parts:
                    self._obs.report_failure("turn_orchestrator", e, phase="mid_stream", attempts=attempts)
                    raise
                last_error = e
                if not e.transient:
                    break
            logger.warning(f"Streaming turn failed before output (attempt {attempts}): {last_error}")
            if attempts <= self._max_retries:
                self._obs.increment("llm.retry")
                await self._sleep(self._backoff_s * 2 ** (attempts - 1))

        fallback = self._fallback(last_error, conversation, attempts)
        yield TurnChunk(delta=fallback.content)
        yield TurnChunk(final=fallback)

    async def _complete_with_tools(
        self,
        prompt: list[LLMMessage],
        conversation: Conversation | None,
        state: _TurnState,
    ) -> None:
        messages = list(prompt)
        for round_no in range(self.MAX_TOOL_ROUNDS + 1):
            tools = self._tools.definitions if round_no < self.MAX_TOOL_ROUNDS else None
            response = await self._llm.chat(messages, self._temperature, tools=tools)
            if not response.tool_calls:
                state.parts = [response.content]
                return
            messages.append(LLMMessage(role="assistant", content=response.content, tool_calls=response.tool_calls))
            messages.extend(await self._run_tools(response.tool_calls, conversation, state))

    async def _stream_with_tools(
        self,
        prompt: list[LLMMessage],
        conversation: Conversation | None,
        state: _TurnState,
    ) -> AsyncIterator[str]:
        messages = list(prompt)
        for round_no in range(self.MAX_TOOL_ROUNDS + 1):
            tools = self._tools.definitions if round_no < self.MAX_TOOL_ROUNDS else None
            calls = []
            round_text: list[str] = []
            async with aclosing(self._llm.stream_chat(messages, self._temperature, tools=tools)) as stream:
                while True:
                    try:
                        chunk = await asyncio.wait_for(anext(stream), timeout=self._timeout_s)
                    except StopAsyncIteration:
                        break
                    except TimeoutError as e:
                        raise LLMProviderError(f"No model output for {self._timeout_s}s") from e
                    if chunk.delta:
                        round_text.append(chunk.delta)
                        state.parts.append(chunk.delta)
                        yield chunk.delta
                    calls.extend(chunk.tool_calls)
                    if chunk.done:
                        break
            if not calls:
                return
            messages.append(LLMMessage(role="assistant", content="".join(round_text), tool_calls=calls))
            messages.extend(await self._run_tools(calls, conversation, state))

    async def _run_tools(self, calls, conversation: Conversation | None, state: _TurnState) -> list[LLMMessage]:
        results = []
        for call in calls:
            if call.name == END_INTERVIEW:
                state.ends = True
            state.tools.append(call.name)
            logger.debug(f"Running tool {call.name} with {call.arguments}")
            output = await self._tools.execute(call, conversation)
            results.append(LLMMessage(role="tool", content=output, tool_name=call.name))
        return results

    def _finish(
        self,
        state: _TurnState,
        final_turn: bool,
        capabilities: ChannelCapabilities,
        attempts: int,
    ) -> OutboundMessage:
        content = state.text.strip() or DEFAULT_CLOSING_MESSAGE
        limit = capabilities.max_message_chars
        if len(content) > limit:
            cut = content[:limit].rsplit(" ", 1)[0]
            content = cut or content[:limit]
        return OutboundMessage(
            content=content,
            completes_interview=state.ends or final_turn,
            metadata={"model": self._llm.model, "attempts": attempts, "tools": list(state.tools)},
        )

    def _fallback(
        self,
        error: LLMProviderError | None,
        conversation: Conversation | None,
        attempts: int,
    ) -> OutboundMessage:
        error = error or LLMProviderError("Turn generation failed")
        self._obs.report_failure(
            "turn_orchestrator",
            error,
            conversation_id=str(conversation.id) if conversation else None,
            attempts=attempts,
        )
        return OutboundMessage(
            content=self._fallback_reply,
            is_fallback=True,
            metadata={"model": self._llm.model, "attempts": attempts, "error": type(error).__name__},
        )
