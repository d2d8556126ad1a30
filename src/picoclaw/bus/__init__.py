"""
Message bus connecting channel adapters to the agent loop.
"""

from .events import SYSTEM_CHANNEL, InboundMessage, OutboundMessage
from .queue import MessageBus

__all__ = ["SYSTEM_CHANNEL", "InboundMessage", "OutboundMessage", "MessageBus"]
