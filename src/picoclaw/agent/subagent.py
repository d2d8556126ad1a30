"""
Subagents: background tasks that report back through the message bus.

A finished subagent publishes a system-origin inbound message whose chat
id encodes ``origin_channel:origin_chat_id``, so the agent loop can route
the result into the conversation that spawned it.
"""

import asyncio
import time
from dataclasses import dataclass, field

import structlog

from ..bus.events import SYSTEM_CHANNEL, InboundMessage
from ..bus.queue import MessageBus
from ..llm.base import BaseLLM, ChatOptions, LLMMessage

logger = structlog.get_logger()

SUBAGENT_SYSTEM_PROMPT = (
    "You are a subagent. Complete the given task independently and report the result."
)


@dataclass
class SubagentTask:
    """Bookkeeping for one spawned task."""

    id: str
    task: str
    label: str
    origin_channel: str
    origin_chat_id: str
    status: str = "running"
    result: str = ""
    created: float = field(default_factory=time.time)


class SubagentManager:
    """Spawns and tracks subagent tasks."""

    def __init__(
        self,
        llm: BaseLLM,
        bus: MessageBus | None = None,
        model: str | None = None,
        max_tokens: int = 4096,
    ):
        self.llm = llm
        self.bus = bus
        self.model = model or llm.default_model
        self.max_tokens = max_tokens
        self._tasks: dict[str, SubagentTask] = {}
        self._running: set[asyncio.Task] = set()
        self._next_id = 1

    def spawn(self, task: str, label: str, origin_channel: str, origin_chat_id: str) -> str:
        """Start a subagent and return a confirmation for the model."""
        task_id = f"subagent-{self._next_id}"
        self._next_id += 1

        record = SubagentTask(
            id=task_id,
            task=task,
            label=label,
            origin_channel=origin_channel,
            origin_chat_id=origin_chat_id,
        )
        self._tasks[task_id] = record

        runner = asyncio.create_task(self._run(record))
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)

        logger.info("Spawned subagent", task_id=task_id, label=label, origin=f"{origin_channel}:{origin_chat_id}")

        if label:
            return f"Spawned subagent '{label}' for task: {task}"
        return f"Spawned subagent for task: {task}"

    async def _run(self, record: SubagentTask) -> None:
        messages = [
            LLMMessage(role="system", content=SUBAGENT_SYSTEM_PROMPT),
            LLMMessage(role="user", content=record.task),
        ]

        try:
            response = await self.llm.chat(
                messages,
                model=self.model,
                options=ChatOptions(max_tokens=self.max_tokens),
            )
            record.status = "completed"
            record.result = response.content
        except asyncio.CancelledError:
            record.status = "cancelled"
            raise
        except Exception as e:
            logger.error("Subagent failed", task_id=record.id, error=str(e))
            record.status = "failed"
            record.result = f"Error: {e}"

        if self.bus is not None:
            await self.bus.publish_inbound(InboundMessage(
                channel=SYSTEM_CHANNEL,
                sender_id=f"subagent:{record.id}",
                chat_id=f"{record.origin_channel}:{record.origin_chat_id}",
                content=f"Task '{record.label or record.id}' {record.status}.\n\nResult:\n{record.result}",
            ))

    def get_task(self, task_id: str) -> SubagentTask | None:
        return self._tasks.get(task_id)

    def list_tasks(self) -> list[SubagentTask]:
        return list(self._tasks.values())

    async def drain(self) -> None:
        """Wait for running subagents to finish."""
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
