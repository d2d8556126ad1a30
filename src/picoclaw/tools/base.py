"""
Base classes for tools.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model

from ..llm.base import ToolArgument, ToolDefinition

_JSON_SCHEMA_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: str = ""
    data: Any = None
    error: str | None = None

    @property
    def text(self) -> str:
        """What the model sees for this result."""
        return self.output if self.success else f"Error: {self.error}"


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, number, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


def build_arguments_model(tool_name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Build a pydantic model that validates arguments against a JSON schema.

    Only the top-level ``properties``/``required`` keywords are enforced;
    nested structures are checked for their container type only.
    """
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or [])
    fields: dict[str, Any] = {}

    for index, (name, prop) in enumerate(properties.items()):
        py_type = _JSON_SCHEMA_TYPES.get(prop.get("type"), Any)
        if name in required:
            fields[f"arg_{index}"] = (py_type, Field(alias=name))
        else:
            fields[f"arg_{index}"] = (Optional[py_type], Field(default=None, alias=name))

    return create_model(
        f"{tool_name}_arguments",
        __config__=ConfigDict(extra="ignore"),
        **fields,
    )


def validate_arguments(
    model: type[BaseModel], arguments: dict[str, ToolArgument]
) -> dict[str, ToolArgument]:
    """Validate and coerce arguments. Raises pydantic.ValidationError."""
    validated = model.model_validate(arguments)
    return validated.model_dump(by_alias=True, exclude_unset=True)


@dataclass
class Tool:
    """
    Simple tool wrapper that can be created from a function.

    This is an alternative to the class-based BaseTool for simpler tools.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.get_parameters_schema(),
        )

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool handler."""
        return await self.handler(**kwargs)


class BaseTool(ABC):
    """Base class for all tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Get the tool name."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Get the tool description."""
        pass

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """Get the tool parameters schema (JSON Schema)."""
        pass

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool with given arguments."""
        pass

    def to_definition(self) -> ToolDefinition:
        """Convert to a tool definition for LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )


class RoutedTool(BaseTool):
    """A tool that needs to know which conversation the current turn belongs to."""

    def __init__(self):
        self.channel = "cli"
        self.chat_id = "direct"

    def set_context(self, channel: str, chat_id: str) -> None:
        self.channel = channel
        self.chat_id = chat_id
