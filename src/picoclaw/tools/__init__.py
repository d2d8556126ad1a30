"""
Tools module for agent capabilities.
"""

from .base import BaseTool, RoutedTool, Tool, ToolParameter, ToolResult
from .registry import ToolRegistry
from .message import MessageTool
from .spawn import SpawnTool

__all__ = [
    "BaseTool",
    "RoutedTool",
    "Tool",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "MessageTool",
    "SpawnTool",
]
