"""
In-process message bus between channel adapters and the agent loop.
"""

import asyncio

import structlog

from .events import InboundMessage, OutboundMessage

logger = structlog.get_logger()


class MessageBus:
    """Two async queues: inbound to the agent, outbound to the channels."""

    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()

    async def publish_inbound(self, msg: InboundMessage) -> None:
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        """Wait for the next inbound message. Cancellable."""
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        await self.outbound.put(msg)

    async def consume_outbound(self) -> OutboundMessage:
        """Wait for the next outbound message. Cancellable."""
        return await self.outbound.get()

    @property
    def inbound_size(self) -> int:
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        return self.outbound.qsize()
