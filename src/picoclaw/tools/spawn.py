"""
Spawn tool - hands a task to a background subagent.
"""

from typing import TYPE_CHECKING, Any

from .base import RoutedTool, ToolResult

if TYPE_CHECKING:
    from ..agent.subagent import SubagentManager


class SpawnTool(RoutedTool):
    """Start a subagent that reports back into the current conversation."""

    def __init__(self, manager: "SubagentManager | None" = None):
        super().__init__()
        self.manager = manager

    @property
    def name(self) -> str:
        return "spawn"

    @property
    def description(self) -> str:
        return (
            "Spawn a subagent to handle a task in the background. Use this for complex "
            "or time-consuming tasks that can run independently. The subagent will "
            "complete the task and report back when done."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "task": {
                    "type": "string",
                    "description": "The task for the subagent to complete",
                },
                "label": {
                    "type": "string",
                    "description": "Optional short label for the task (for display)",
                },
            },
            "required": ["task"],
        }

    async def execute(self, task: str, label: str | None = None) -> ToolResult:
        if self.manager is None:
            return ToolResult(success=False, error="Subagent manager not configured")

        output = self.manager.spawn(task, label or "", self.channel, self.chat_id)
        return ToolResult(success=True, output=output)
