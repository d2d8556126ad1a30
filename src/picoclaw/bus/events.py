"""
Message types that flow through the bus.

Channel adapters convert their native format to InboundMessage and
deliver OutboundMessage back to the platform.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Channel used for messages produced inside the agent (e.g. subagent reports).
SYSTEM_CHANNEL = "system"


@dataclass
class InboundMessage:
    """Platform-agnostic message received from a channel."""

    channel: str
    sender_id: str
    chat_id: str
    content: str
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_key_override: str | None = None

    @property
    def session_key(self) -> str:
        """Key of the conversation this message belongs to."""
        return self.session_key_override or f"{self.channel}:{self.chat_id}"

    @property
    def is_system(self) -> bool:
        return self.channel == SYSTEM_CHANNEL


@dataclass
class OutboundMessage:
    """Message being sent back to a channel."""

    channel: str
    chat_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
