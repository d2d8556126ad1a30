"""
Tool registry for managing available tools.
"""

from typing import Any, Union

import structlog
from pydantic import BaseModel, ValidationError

from ..llm.base import ToolArgument, ToolDefinition
from .base import BaseTool, Tool, ToolResult, build_arguments_model, validate_arguments

logger = structlog.get_logger()


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self):
        self._tools: dict[str, Union[BaseTool, Tool]] = {}
        self._argument_models: dict[str, type[BaseModel]] = {}

    def register(self, tool: Union[BaseTool, Tool]) -> None:
        """Register a tool."""
        definition = tool.to_definition()
        self._tools[tool.name] = tool
        self._argument_models[tool.name] = build_arguments_model(tool.name, definition.parameters)
        logger.info("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            self._argument_models.pop(name, None)
            logger.info("Tool unregistered", tool_name=name)

    def get(self, name: str) -> Union[BaseTool, Tool, None]:
        """Get a tool by name."""
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def all(self) -> list[Union[BaseTool, Tool]]:
        return list(self._tools.values())

    def definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [tool.to_definition() for tool in self._tools.values()]

    async def execute(self, name: str, arguments: dict[str, ToolArgument]) -> ToolResult:
        """Execute a tool by name.

        Unknown tools, invalid arguments and handler exceptions all come
        back as a failed ToolResult instead of raising.
        """
        tool = self.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                output="",
                error=f"Tool '{name}' not found",
            )

        try:
            kwargs: dict[str, Any] = validate_arguments(self._argument_models[name], arguments)
        except ValidationError as e:
            logger.warning("Invalid tool arguments", tool_name=name, error=str(e))
            return ToolResult(
                success=False,
                output="",
                error=f"Invalid arguments for tool '{name}': {e}",
            )

        try:
            logger.info("Executing tool", tool_name=name, arguments=arguments)
            result = await tool.execute(**kwargs)
            logger.info("Tool executed", tool_name=name, success=result.success)
            return result
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            return ToolResult(
                success=False,
                output="",
                error=str(e),
            )
