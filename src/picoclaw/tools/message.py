"""
Message tool - lets the agent push a message to a chat channel.
"""

from typing import Any, Awaitable, Callable

from ..bus.events import OutboundMessage
from .base import RoutedTool, ToolResult


class MessageTool(RoutedTool):
    """Send a message to the current chat or to an explicit channel/chat."""

    def __init__(self, send_callback: Callable[[OutboundMessage], Awaitable[None]] | None = None):
        super().__init__()
        self.send_callback = send_callback

    @property
    def name(self) -> str:
        return "message"

    @property
    def description(self) -> str:
        return (
            "Send a message to the user on a chat channel. Use this only when you "
            "need to reach a specific channel; for normal replies just answer with text."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "content": {
                    "type": "string",
                    "description": "The message content to send",
                },
                "channel": {
                    "type": "string",
                    "description": "Optional target channel (defaults to the current one)",
                },
                "chat_id": {
                    "type": "string",
                    "description": "Optional target chat ID (defaults to the current one)",
                },
            },
            "required": ["content"],
        }

    async def execute(
        self,
        content: str,
        channel: str | None = None,
        chat_id: str | None = None,
    ) -> ToolResult:
        if self.send_callback is None:
            return ToolResult(success=False, error="Message sending not configured")

        target_channel = channel or self.channel
        target_chat = chat_id or self.chat_id
        await self.send_callback(OutboundMessage(
            channel=target_channel,
            chat_id=target_chat,
            content=content,
        ))
        return ToolResult(success=True, output=f"Message sent to {target_channel}:{target_chat}")
