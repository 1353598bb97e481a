"""
Models module for LLM client abstraction.

Provides a unified interface for interacting with Ollama over HTTP.
"""

from autonaim_interview.models.llm_client import (
    DEFAULT_OLLAMA_MODEL,
    LLMClient,
    LLMClientBase,
    LLMResponse,
    Message,
    StreamChunk,
    ToolCall,
)

__all__ = [
    "LLMClient",
    "LLMClientBase",
    "LLMResponse",
    "Message",
    "StreamChunk",
    "ToolCall",
    "DEFAULT_OLLAMA_MODEL",
]
