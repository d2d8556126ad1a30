"""
Base classes for LLM providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Union

# JSON-compatible value a model can pass as a tool argument.
ToolArgument = Union[str, int, float, bool, None, list[Any], dict[str, Any]]

# Key under which undecodable tool-call arguments are preserved verbatim.
RAW_ARGUMENTS_KEY = "raw"


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolCall:
    """A tool call made by the LLM."""

    id: str
    name: str
    arguments: dict[str, ToolArgument] = field(default_factory=dict)


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None


@dataclass
class UsageInfo:
    """Token counts reported by the backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class LLMResponse:
    """Response from an LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: UsageInfo | None = None
    model: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class ChatOptions:
    """Request options recognized by the transport."""

    max_tokens: int | None = None
    temperature: float | None = None


class BaseLLM(ABC):
    """Base class for LLM providers."""

    @abstractmethod
    async def chat(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        model: str | None = None,
        options: ChatOptions | None = None,
    ) -> LLMResponse:
        """Send a chat-completion request and return the parsed response."""
        pass

    @property
    @abstractmethod
    def default_model(self) -> str:
        """Model used when the caller does not name one."""
        pass

    async def aclose(self) -> None:
        """Release transport resources."""
        return None
