"""
Context builder: assembles the message list sent to the model.

The system prompt is built from a fixed identity block plus any bootstrap
files found in the workspace (SOUL.md, USER.md, ...). The rolling summary
of older turns is appended to the system prompt, followed by the stored
history and the current user message.
"""

import platform
from datetime import date, datetime, timedelta
from pathlib import Path

import structlog

from ..llm.base import LLMMessage

logger = structlog.get_logger()

BOOTSTRAP_FILES = ("AGENTS.md", "SOUL.md", "USER.md", "TOOLS.md", "IDENTITY.md")
MEMORY_DIR = Path("memory")
MEMORY_FILE = MEMORY_DIR / "MEMORY.md"
RECENT_NOTE_DAYS = 3
SECTION_SEPARATOR = "\n\n---\n\n"

DEFAULT_IDENTITY = """# PicoClaw

You are PicoClaw, a helpful AI assistant running on the user's own hardware.
You have tools that let you send messages to chat channels and hand long
tasks to background subagents.

## Current Time
{now}

## Runtime
{runtime}

## Workspace
Your workspace is at: {workspace}

When responding to direct questions or conversations, reply with text.
Only use the 'message' tool when you need to reach a specific chat channel.
Always be helpful, accurate, and concise. When using tools, explain what you're doing."""


class ContextBuilder:
    """Builds the prompt context for a turn."""

    def __init__(self, workspace_dir: str | Path | None = None, identity: str | None = None):
        self.workspace = Path(workspace_dir or "~/.picoclaw/workspace").expanduser()
        self.identity = identity or DEFAULT_IDENTITY

    def _identity_block(self) -> str:
        return self.identity.format(
            now=datetime.now().strftime("%Y-%m-%d %H:%M (%A)"),
            runtime=f"{platform.system()} {platform.machine()}, Python {platform.python_version()}",
            workspace=self.workspace,
        )

    def load_bootstrap_files(self) -> str:
        """Concatenate the workspace bootstrap files that exist."""
        parts = []
        for filename in BOOTSTRAP_FILES:
            path = self.workspace / filename
            try:
                content = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Error reading bootstrap file", path=str(path), error=str(e))
                continue
            parts.append(f"## {filename}\n\n{content.strip()}")
        return "\n\n".join(parts)

    def load_memory(self) -> str:
        path = self.workspace / MEMORY_FILE
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    def load_recent_notes(self, days: int = RECENT_NOTE_DAYS, today: date | None = None) -> str:
        """Daily notes (memory/YYYY-MM-DD.md) from the last ``days`` days, newest first."""
        today = today or date.today()
        notes = []
        for offset in range(days):
            path = self.workspace / MEMORY_DIR / f"{(today - timedelta(days=offset)).isoformat()}.md"
            try:
                content = path.read_text(encoding="utf-8").strip()
            except OSError:
                continue
            if content:
                notes.append(content)
        return SECTION_SEPARATOR.join(notes)

    def build_system_prompt(self) -> str:
        parts = [self._identity_block()]

        bootstrap = self.load_bootstrap_files()
        if bootstrap:
            parts.append(bootstrap)

        memory_parts = []
        memory = self.load_memory()
        if memory:
            memory_parts.append(memory)
        notes = self.load_recent_notes()
        if notes:
            memory_parts.append(f"## Recent Daily Notes\n\n{notes}")
        if memory_parts:
            parts.append("# Memory\n\n" + "\n\n".join(memory_parts))

        return SECTION_SEPARATOR.join(parts)

    def build_messages(
        self,
        history: list[LLMMessage],
        summary: str,
        current_message: str,
        media: list[str] | None = None,
        channel: str | None = None,
        chat_id: str | None = None,
    ) -> list[LLMMessage]:
        """Return system prompt, history, and the current user message."""
        system_prompt = self.build_system_prompt()

        if channel and chat_id:
            system_prompt += f"\n\n## Current Session\nChannel: {channel}\nChat ID: {chat_id}"

        if summary:
            system_prompt += f"\n\n## Summary of Previous Conversation\n\n{summary}"

        logger.debug(
            "System prompt built",
            total_chars=len(system_prompt),
            history_messages=len(history),
        )

        user_content = current_message
        if media:
            user_content += "\n\n" + "\n".join(f"[Attachment: {item}]" for item in media)

        return [
            LLMMessage(role="system", content=system_prompt),
            *history,
            LLMMessage(role="user", content=user_content),
        ]
