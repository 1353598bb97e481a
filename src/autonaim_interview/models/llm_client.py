"""
LLM client abstraction.

Provides a unified interface for interacting with a local Ollama server
over its HTTP chat API, in batch and streaming mode, with native tool calls.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import BaseModel, Field

from autonaim_interview.config import get_settings
from autonaim_interview.errors import LLMProviderError

logger = logging.getLogger(__name__)

# Default model for Ollama
DEFAULT_OLLAMA_MODEL = "gpt-oss:20b"


class ToolCall(BaseModel):
    """A function call requested by the model."""

    name: str = Field(..., description="Tool name")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Tool arguments")


class Message(BaseModel):
    """A message in a conversation."""

    role: str = Field(..., description="Role of the speaker (system, user, assistant, tool)")
    content: str = Field(..., description="Message content")
    tool_calls: list[ToolCall] = Field(default_factory=list, description="Tool calls made by the assistant")
    tool_name: str | None = Field(default=None, description="Tool that produced this message (role=tool)")


class LLMResponse(BaseModel):
    """Response from an LLM."""

    content: str = Field(..., description="Generated text content")
    finish_reason: str = Field(default="stop", description="Reason for completion")
    usage: dict[str, int] = Field(
        default_factory=dict,
        description="Token usage information",
    )
    model: str = Field(default="", description="Model used for generation")
    tool_calls: list[ToolCall] = Field(default_factory=list, description="Requested tool calls")
    raw_response: dict[str, Any] = Field(
        default_factory=dict,
        description="Raw response from the API",
    )


class StreamChunk(BaseModel):
    """One unit of a streamed generation."""

    delta: str = Field(default="", description="Text produced since the previous chunk")
    tool_calls: list[ToolCall] = Field(default_factory=list)
    done: bool = Field(default=False, description="Last chunk of the stream")
    finish_reason: str | None = None


class LLMClientBase(ABC):
    """Abstract base class for LLM clients."""

    @property
    def model(self) -> str:
        return ""

    @abstractmethod
    async def chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        tools: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """
        Generate a chat completion.

        Args:
            messages: Conversation history.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            tools: Tool definitions the model may call.
            **kwargs: Additional model-specific parameters.

        Returns:
            Generated response.

        Raises:
            LLMProviderError: If the provider fails.
        """
        ...

    async def stream_chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        tools: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a chat completion.

        The default implementation emits the batch response as one chunk.
        """
        response = await self.chat(messages, temperature, max_tokens, tools=tools, **kwargs)
        yield StreamChunk(
            delta=response.content,
            tool_calls=response.tool_calls,
            done=True,
            finish_reason=response.finish_reason,
        )

    async def close(self) -> None:
        """Close the client and release resources."""
        return None


def _parse_tool_calls(message: dict[str, Any]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for raw in message.get("tool_calls") or []:
        function = raw.get("function") or {}
        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments)
            except json.JSONDecodeError:
                arguments = {}
        if function.get("name"):
            calls.append(ToolCall(name=function["name"], arguments=arguments))
    return calls


def _serialize_message(message: Message) -> dict[str, Any]:
    data: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        data["tool_calls"] = [
            {"function": {"name": call.name, "arguments": call.arguments}} for call in message.tool_calls
        ]
    if message.tool_name:
        data["tool_name"] = message.tool_name
    return data


class LLMClient(LLMClientBase):
    """
    Ollama-based LLM client.

    Talks to the Ollama HTTP API (`POST /api/chat`). Batch requests return
    one JSON document; streaming requests return newline-delimited JSON
    chunks. Transport errors, timeouts, 429 and 5xx responses are raised as
    transient `LLMProviderError`s; other 4xx responses are not transient.
    """

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the Ollama LLM client.

        Args:
            model: Model name (defaults to settings, then gpt-oss:20b).
            base_url: Ollama server URL (defaults to settings).
            timeout: Request timeout in seconds (defaults to settings).
            http_client: Preconfigured client, mainly for tests.
        """
        settings = get_settings()
        self._model = model or settings.llm_model_name or DEFAULT_OLLAMA_MODEL
        self._base_url = (base_url or settings.llm_base_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.llm_timeout
        self._client = http_client or httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        self._owns_client = http_client is None

        logger.info(f"Initialized Ollama LLM client with model: {self._model}")

    @property
    def model(self) -> str:
        """Get the model name."""
        return self._model

    def _build_payload(
        self,
        messages: list[Message],
        temperature: float,
        max_tokens: int | None,
        tools: list[dict[str, Any]] | None,
        stream: bool,
        **kwargs: Any,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {"temperature": temperature}
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        for key in ("top_p", "num_ctx"):
            if kwargs.get(key) is not None:
                options[key] = kwargs[key]
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [_serialize_message(m) for m in messages],
            "stream": stream,
            "options": options,
        }
        if tools:
            payload["tools"] = tools
        return payload

    def _status_error(self, status_code: int, body: str) -> LLMProviderError:
        transient = status_code == 429 or status_code >= 500
        return LLMProviderError(
            f"Ollama returned HTTP {status_code}: {body[:200]}",
            status_code=status_code,
            transient=transient,
        )

    async def chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        tools: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """
        Generate a chat completion using Ollama.

        Args:
            messages: Conversation history.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            tools: Tool definitions in Ollama function format.
            **kwargs: Additional parameters (top_p, num_ctx).

        Returns:
            Generated response.
        """
        payload = self._build_payload(messages, temperature, max_tokens, tools, stream=False, **kwargs)
        try:
            response = await self._client.post("/api/chat", json=payload)
        except httpx.TimeoutException as e:
            logger.warning(f"Ollama timed out after {self._timeout}s")
            raise LLMProviderError(f"Ollama timed out after {self._timeout} seconds") from e
        except httpx.HTTPError as e:
            logger.warning(f"Ollama request failed: {e}")
            raise LLMProviderError(f"Ollama request failed: {e}") from e

        if response.status_code >= 400:
            raise self._status_error(response.status_code, response.text)

        data = response.json()
        if data.get("error"):
            raise LLMProviderError(f"Ollama error: {data['error']}")

        message = data.get("message") or {}
        content = (message.get("content") or "").strip()
        logger.debug(f"Ollama response length: {len(content)} chars")
        return LLMResponse(
            content=content,
            finish_reason=data.get("done_reason") or "stop",
            usage={
                "prompt_tokens": int(data.get("prompt_eval_count") or 0),
                "completion_tokens": int(data.get("eval_count") or 0),
            },
            model=data.get("model") or self._model,
            tool_calls=_parse_tool_calls(message),
            raw_response=data,
        )

    async def stream_chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
        tools: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a chat completion as NDJSON chunks.

        Closing the generator early closes the HTTP response, which stops
        the server from generating further tokens.
        """
        payload = self._build_payload(messages, temperature, max_tokens, tools, stream=True, **kwargs)
        try:
            async with self._client.stream("POST", "/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._status_error(response.status_code, body)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise LLMProviderError(f"Malformed stream chunk from Ollama: {line[:200]}") from e
                    if data.get("error"):
                        raise LLMProviderError(f"Ollama error: {data['error']}")
                    message = data.get("message") or {}
                    done = bool(data.get("done"))
                    yield StreamChunk(
                        delta=message.get("content") or "",
                        tool_calls=_parse_tool_calls(message),
                        done=done,
                        finish_reason=data.get("done_reason") if done else None,
                    )
                    if done:
                        return
        except httpx.TimeoutException as e:
            raise LLMProviderError(f"Ollama stream timed out after {self._timeout} seconds") from e
        except httpx.HTTPError as e:
            raise LLMProviderError(f"Ollama stream failed: {e}") from e

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
