"""
Conversation Compaction - Background history summarization.

When a session's history grows past a threshold, older turns are folded
into the session's rolling summary and the history is cut down to a short
verbatim tail. Compaction runs as a background task and never blocks the
turn that triggered it.

Key features:
- Single-flight per session key (a second trigger while one runs is a no-op)
- Two-part summarization with a merge step for long remainders
- Oversized messages are left out so they cannot overflow the summarizer
- All-or-nothing: on any failure the session is left untouched
"""

import asyncio
import threading
from dataclasses import dataclass

import structlog

from ..llm.base import BaseLLM, ChatOptions, LLMMessage
from .session import SessionStore

logger = structlog.get_logger()

# Approximate characters per token
CHARS_PER_TOKEN = 4

DEFAULT_TRIGGER_MESSAGES = 20
DEFAULT_KEEP_RECENT = 4
DEFAULT_SPLIT_THRESHOLD = 10
DEFAULT_CONTEXT_WINDOW = 128_000

OMITTED_NOTE = "[Note: Some oversized messages were omitted from this summary for efficiency.]"

SUMMARY_PROMPT = (
    "Provide a concise summary of this conversation segment, "
    "preserving core context and key points.\n"
)
MERGE_PROMPT = (
    "Merge these two conversation summaries into one cohesive summary:\n\n"
    "1: {first}\n\n2: {second}"
)


@dataclass
class CompactionConfig:
    """Configuration for conversation compaction."""

    trigger_messages: int = DEFAULT_TRIGGER_MESSAGES
    keep_recent_messages: int = DEFAULT_KEEP_RECENT
    split_threshold: int = DEFAULT_SPLIT_THRESHOLD
    context_window: int = DEFAULT_CONTEXT_WINDOW
    summary_max_tokens: int = 1024
    summary_temperature: float = 0.3
    timeout_seconds: float = 120.0
    enabled: bool = True


@dataclass
class CompactionResult:
    """Result of a compaction operation."""

    session_key: str
    original_message_count: int
    summarized_message_count: int = 0
    omitted_message_count: int = 0
    summary: str = ""
    success: bool = False
    error: str | None = None


def estimate_tokens(text: str) -> int:
    """Rough token estimate for a piece of text."""
    return len(text) // CHARS_PER_TOKEN


class CompactionLeases:
    """Tracks which session keys have a compaction in flight."""

    def __init__(self):
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        """Mark ``key`` as in progress. False if it already was."""
        with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._active.discard(key)

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._active


class Compactor:
    """Summarizes and truncates long session histories in the background."""

    def __init__(
        self,
        store: SessionStore,
        llm: BaseLLM,
        model: str | None = None,
        config: CompactionConfig | None = None,
        leases: CompactionLeases | None = None,
    ):
        self.store = store
        self.llm = llm
        self.model = model or llm.default_model
        self.config = config or CompactionConfig()
        self.leases = leases or CompactionLeases()
        self._tasks: set[asyncio.Task] = set()

    def should_compact(self, key: str) -> bool:
        return (
            self.config.enabled
            and self.store.history_length(key) > self.config.trigger_messages
        )

    def maybe_compact(self, key: str) -> asyncio.Task | None:
        """Start a background compaction for ``key`` if one is due.

        Returns the spawned task, or None when compaction is not needed or
        already running for this key. Must be called from a running loop.
        """
        if not self.should_compact(key):
            return None

        if not self.leases.try_acquire(key):
            logger.debug("Compaction already in progress", session_key=key)
            return None

        task = asyncio.create_task(self.compact(key))
        self._tasks.add(task)

        def _on_done(done: asyncio.Task) -> None:
            self._tasks.discard(done)
            self.leases.release(key)
            if not done.cancelled() and done.exception() is not None:
                logger.error("Compaction task crashed", session_key=key, error=str(done.exception()))

        task.add_done_callback(_on_done)
        return task

    async def drain(self) -> None:
        """Wait for every in-flight compaction to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def compact(self, key: str) -> CompactionResult:
        """Summarize everything but the recent tail of a session's history.

        Errors are logged and reported in the result; the stored session is
        only changed when a summary was produced.
        """
        snapshot = self.store.snapshot_for_compaction(key)
        history = snapshot.messages
        existing_summary = snapshot.summary
        result = CompactionResult(session_key=key, original_message_count=len(history))

        keep = self.config.keep_recent_messages
        if len(history) <= keep:
            result.success = True
            return result

        to_summarize = history[:-keep] if keep else history
        candidates, omitted = self._select_messages(to_summarize)
        result.omitted_message_count = omitted

        if not candidates:
            logger.info("Nothing to compact", session_key=key, omitted=omitted)
            result.success = True
            return result

        logger.info(
            "Starting conversation compaction",
            session_key=key,
            message_count=len(history),
            summarizing=len(candidates),
            omitted=omitted,
        )

        try:
            summary = await asyncio.wait_for(
                self._summarize(candidates, existing_summary),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Compaction abandoned", session_key=key, error=str(e))
            result.error = str(e)
            return result

        if not summary:
            logger.warning("Compaction produced an empty summary", session_key=key)
            result.error = "empty summary"
            return result

        if omitted:
            summary = f"{summary}\n{OMITTED_NOTE}"

        if not self.store.apply_compaction(key, summary, len(to_summarize), epoch=snapshot.epoch):
            result.error = "session changed during compaction"
            return result

        try:
            await asyncio.to_thread(self.store.persist, key)
        except OSError as e:
            logger.error("Failed to persist compacted session", session_key=key, error=str(e))

        result.summary = summary
        result.summarized_message_count = len(to_summarize)
        result.success = True

        logger.info(
            "Compaction complete",
            session_key=key,
            original=result.original_message_count,
            remaining=self.store.history_length(key),
        )
        return result

    def _select_messages(self, messages: list[LLMMessage]) -> tuple[list[LLMMessage], int]:
        """Keep conversational messages small enough to summarize."""
        max_tokens = self.config.context_window // 2
        selected = []
        omitted = 0

        for msg in messages:
            if msg.role not in ("user", "assistant"):
                continue
            if estimate_tokens(msg.content) > max_tokens:
                omitted += 1
                continue
            selected.append(msg)

        return selected, omitted

    async def _summarize(self, messages: list[LLMMessage], existing_summary: str) -> str:
        if len(messages) <= self.config.split_threshold:
            return await self.summarize_batch(messages, existing_summary)

        mid = len(messages) // 2
        first = await self.summarize_batch(messages[:mid], existing_summary)
        second = await self.summarize_batch(messages[mid:])

        try:
            response = await self.llm.chat(
                [LLMMessage(role="user", content=MERGE_PROMPT.format(first=first, second=second))],
                model=self.model,
                options=self._options(),
            )
            merged = response.content.strip()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Summary merge failed, concatenating parts", error=str(e))
            merged = ""

        return merged or f"{first} {second}"

    async def summarize_batch(self, batch: list[LLMMessage], existing_summary: str = "") -> str:
        """Ask the backend for a summary of one slice of the conversation."""
        prompt = SUMMARY_PROMPT
        if existing_summary:
            prompt += f"Existing context: {existing_summary}\n"
        prompt += "\nCONVERSATION:\n"
        prompt += "".join(f"{m.role}: {m.content}\n" for m in batch)

        response = await self.llm.chat(
            [LLMMessage(role="user", content=prompt)],
            model=self.model,
            options=self._options(),
        )
        return response.content.strip()

    def _options(self) -> ChatOptions:
        return ChatOptions(
            max_tokens=self.config.summary_max_tokens,
            temperature=self.config.summary_temperature,
        )
