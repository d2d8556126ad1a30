"""
Core agent loop: the tool-calling state machine.

For every inbound message the loop:
1. Builds the prompt context from stored history and summary
2. Asks the model whether to answer or call tools
3. Executes requested tools in order and feeds results back
4. Persists the exchange and schedules background compaction
"""

import asyncio
import json
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from ..bus.events import InboundMessage, OutboundMessage
from ..bus.queue import MessageBus
from ..llm.base import BaseLLM, ChatOptions, LLMMessage
from ..tools.base import RoutedTool
from ..tools.message import MessageTool
from ..tools.registry import ToolRegistry
from ..tools.spawn import SpawnTool
from .compaction import CompactionConfig, Compactor
from .context import ContextBuilder
from .session import SessionStore
from .subagent import SubagentManager

if TYPE_CHECKING:
    from ..config import Settings

logger = structlog.get_logger()

DEFAULT_MAX_ITERATIONS = 20

EMPTY_RESPONSE_MESSAGE = "I've completed processing but have no response to give."
ITERATION_LIMIT_MESSAGE = "I've reached the maximum number of tool iterations without a final answer."
BACKGROUND_DONE_MESSAGE = "Background task completed."
HELP_MESSAGE = (
    "PicoClaw commands:\n"
    "/new - Start a new conversation\n"
    "/help - Show available commands"
)


class TurnState(str, Enum):
    """States a turn moves through."""

    BUILD_CONTEXT = "build_context"
    REQUEST = "request"
    TOOL_EXECUTE = "tool_execute"
    DONE = "done"


@dataclass
class TurnResult:
    """Outcome of one turn."""

    content: str = ""
    iterations: int = 0
    tools_used: list[str] = field(default_factory=list)
    hit_iteration_limit: bool = False
    trace: list[TurnState] = field(default_factory=list)


def parse_origin(chat_id: str) -> tuple[str, str]:
    """Split a system message's ``channel:chat_id`` routing field."""
    channel, sep, origin_chat = chat_id.partition(":")
    if sep and channel:
        return channel, origin_chat
    return "cli", chat_id


def _preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


class AgentLoop:
    """Main agent class that processes messages and generates responses."""

    def __init__(
        self,
        llm: BaseLLM,
        sessions: SessionStore,
        bus: MessageBus | None = None,
        tool_registry: ToolRegistry | None = None,
        context_builder: ContextBuilder | None = None,
        compactor: Compactor | None = None,
        subagents: SubagentManager | None = None,
        model: str | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        options: ChatOptions | None = None,
    ):
        self.llm = llm
        self.sessions = sessions
        self.bus = bus
        self.tools = tool_registry or ToolRegistry()
        self.context = context_builder or ContextBuilder()
        self.compactor = compactor
        self.subagents = subagents
        self.model = model or llm.default_model
        self.max_iterations = max_iterations
        self.options = options or ChatOptions(max_tokens=8192, temperature=0.7)

        # A lock lives only while some turn holds or waits on it.
        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._running = False
        self._register_default_tools()

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        llm: BaseLLM | None = None,
        bus: MessageBus | None = None,
    ) -> "AgentLoop":
        """Wire a loop, store, compactor and subagents from settings."""
        if llm is None:
            from ..llm.factory import create_llm
            llm = create_llm(settings)

        sessions = SessionStore(settings.sessions_path)
        compactor = Compactor(
            sessions,
            llm,
            config=CompactionConfig(
                trigger_messages=settings.compaction_trigger_messages,
                keep_recent_messages=settings.compaction_keep_recent,
                context_window=settings.context_window,
                timeout_seconds=settings.compaction_timeout_seconds,
                enabled=settings.compaction_enabled,
            ),
        )

        return cls(
            llm=llm,
            sessions=sessions,
            bus=bus,
            context_builder=ContextBuilder(settings.workspace_path),
            compactor=compactor,
            subagents=SubagentManager(llm, bus=bus),
            max_iterations=settings.max_tool_iterations,
            options=ChatOptions(max_tokens=settings.max_tokens, temperature=settings.temperature),
        )

    def _register_default_tools(self) -> None:
        if self.bus is not None and "message" not in self.tools:
            self.tools.register(MessageTool(send_callback=self.bus.publish_outbound))
        if self.subagents is not None and "spawn" not in self.tools:
            self.tools.register(SpawnTool(manager=self.subagents))

    def _set_tool_context(self, channel: str, chat_id: str) -> None:
        for tool in self.tools.all():
            if isinstance(tool, RoutedTool):
                tool.set_context(channel, chat_id)

    def _lock_for(self, session_key: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_key] = lock
        return lock

    async def run(self) -> None:
        """Consume the bus until stop() is called."""
        if self.bus is None:
            raise RuntimeError("AgentLoop.run() requires a message bus")

        self._running = True
        logger.info("Agent loop started", tools=self.tools.list_tools(), model=self.model)

        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                response = await self.process_message(msg)
            except Exception as e:
                logger.error("Error processing message", channel=msg.channel, error=str(e))
                response = OutboundMessage(
                    channel=msg.channel,
                    chat_id=msg.chat_id,
                    content=f"Sorry, I encountered an error: {e}",
                )

            if response is not None and response.content:
                await self.bus.publish_outbound(response)

    def stop(self) -> None:
        self._running = False
        logger.info("Agent loop stopping")

    async def shutdown(self) -> None:
        """Wait for background compactions and subagents."""
        if self.compactor is not None:
            await self.compactor.drain()
        if self.subagents is not None:
            await self.subagents.drain()

    async def process_direct(
        self,
        content: str,
        session_key: str = "cli:direct",
        channel: str = "cli",
        chat_id: str = "direct",
    ) -> str:
        """Process a message outside the bus (CLI usage)."""
        msg = InboundMessage(
            channel=channel,
            sender_id="user",
            chat_id=chat_id,
            content=content,
            session_key_override=session_key,
        )
        response = await self.process_message(msg)
        return response.content if response else ""

    async def process_message(self, msg: InboundMessage) -> OutboundMessage | None:
        """Process one inbound message and return the reply.

        A turn that fails (e.g. the backend is unreachable) produces an
        apology reply instead of raising; cancellation still propagates.
        """
        if msg.is_system:
            channel, chat_id = parse_origin(msg.chat_id)
            session_key = f"{channel}:{chat_id}"
            logger.info("Processing system message", sender_id=msg.sender_id, session_key=session_key)
            record_as = f"[System: {msg.sender_id}] {msg.content}"
            default_content = BACKGROUND_DONE_MESSAGE
        else:
            channel, chat_id = msg.channel, msg.chat_id
            session_key = msg.session_key
            logger.info(
                "Processing message",
                channel=channel,
                sender_id=msg.sender_id,
                session_key=session_key,
                preview=_preview(msg.content, 80),
            )
            record_as = msg.content
            default_content = EMPTY_RESPONSE_MESSAGE

        try:
            async with self._lock_for(session_key):
                if not msg.is_system:
                    command_reply = self._handle_command(msg.content, session_key)
                    if command_reply is not None:
                        await self._persist(session_key)
                        return OutboundMessage(channel=channel, chat_id=chat_id, content=command_reply)

                self._set_tool_context(channel, chat_id)
                result = await self.run_turn(
                    session_key,
                    msg.content,
                    media=msg.media,
                    channel=channel,
                    chat_id=chat_id,
                    record_as=record_as,
                    default_content=default_content,
                )
        except Exception as e:
            logger.error("Turn failed", session_key=session_key, error=str(e))
            return OutboundMessage(
                channel=channel,
                chat_id=chat_id,
                content=f"Sorry, I encountered an error: {e}",
            )

        return OutboundMessage(
            channel=channel,
            chat_id=chat_id,
            content=result.content,
            metadata=dict(msg.metadata),
        )

    def _handle_command(self, content: str, session_key: str) -> str | None:
        command = content.strip().lower()
        if command == "/new":
            self.sessions.clear(session_key)
            logger.info("Session cleared", session_key=session_key)
            return "New session started."
        if command == "/help":
            return HELP_MESSAGE
        return None

    async def run_turn(
        self,
        session_key: str,
        content: str,
        media: list[str] | None = None,
        channel: str | None = None,
        chat_id: str | None = None,
        record_as: str | None = None,
        default_content: str = EMPTY_RESPONSE_MESSAGE,
    ) -> TurnResult:
        """Run one turn for a session and persist it.

        Backend errors propagate; nothing is written to the session then.
        """
        trace = [TurnState.BUILD_CONTEXT]
        messages = self.context.build_messages(
            self.sessions.history(session_key),
            self.sessions.summary(session_key),
            content,
            media=media,
            channel=channel,
            chat_id=chat_id,
        )

        result = await self._iterate(messages, trace)
        if not result.content:
            result.content = default_content

        self.sessions.append(session_key, "user", record_as if record_as is not None else content)
        self.sessions.append(session_key, "assistant", result.content)
        await self._persist(session_key)

        if self.compactor is not None:
            self.compactor.maybe_compact(session_key)

        result.trace.append(TurnState.DONE)
        logger.info(
            "Turn complete",
            session_key=session_key,
            iterations=result.iterations,
            tools_used=result.tools_used,
            response=_preview(result.content, 120),
        )
        return result

    async def _iterate(self, messages: list[LLMMessage], trace: list[TurnState]) -> TurnResult:
        """REQUEST / TOOL_EXECUTE round trips until a content-only answer."""
        tools = self.tools.definitions()
        tools_used: list[str] = []
        iteration = 0

        while iteration < self.max_iterations:
            iteration += 1
            trace.append(TurnState.REQUEST)
            logger.debug("LLM iteration", iteration=iteration, max=self.max_iterations)

            response = await self.llm.chat(
                messages,
                tools=tools or None,
                model=self.model,
                options=self.options,
            )

            if not response.tool_calls:
                logger.info(
                    "LLM response without tool calls",
                    iteration=iteration,
                    content_chars=len(response.content),
                )
                return TurnResult(
                    content=response.content,
                    iterations=iteration,
                    tools_used=tools_used,
                    trace=trace,
                )

            trace.append(TurnState.TOOL_EXECUTE)
            logger.info(
                "LLM requested tool calls",
                tools=[tc.name for tc in response.tool_calls],
                iteration=iteration,
            )
            messages.append(LLMMessage(
                role="assistant",
                content=response.content,
                tool_calls=response.tool_calls,
            ))

            for tool_call in response.tool_calls:
                tools_used.append(tool_call.name)
                logger.info(
                    "Tool call",
                    tool=tool_call.name,
                    arguments=_preview(json.dumps(tool_call.arguments, ensure_ascii=False, default=str), 200),
                    iteration=iteration,
                )
                result = await self.tools.execute(tool_call.name, tool_call.arguments)
                messages.append(LLMMessage(
                    role="tool",
                    content=result.text,
                    tool_call_id=tool_call.id,
                    name=tool_call.name,
                ))

        logger.warning("Tool iteration limit reached", max=self.max_iterations)
        return TurnResult(
            content=ITERATION_LIMIT_MESSAGE,
            iterations=iteration,
            tools_used=tools_used,
            hit_iteration_limit=True,
            trace=trace,
        )

    async def _persist(self, session_key: str) -> None:
        try:
            await asyncio.to_thread(self.sessions.persist, session_key)
        except OSError as e:
            logger.error("Failed to persist session", session_key=session_key, error=str(e))
