"""
LLM module: the transport that talks to chat-completion backends.

All providers are reached through their OpenAI-compatible endpoints
(OpenRouter, Anthropic, OpenAI, Gemini, Zhipu, Groq, Moonshot, vLLM).
"""

from .base import (
    BaseLLM,
    ChatOptions,
    LLMMessage,
    LLMResponse,
    ToolArgument,
    ToolCall,
    ToolDefinition,
    UsageInfo,
)
from .errors import ErrorKind, LLMError
from .http import Endpoint, HTTPProvider, strip_orphaned_tool_messages
from .factory import create_llm

__all__ = [
    "BaseLLM",
    "ChatOptions",
    "LLMMessage",
    "LLMResponse",
    "ToolArgument",
    "ToolCall",
    "ToolDefinition",
    "UsageInfo",
    "ErrorKind",
    "LLMError",
    "Endpoint",
    "HTTPProvider",
    "strip_orphaned_tool_messages",
    "create_llm",
]
