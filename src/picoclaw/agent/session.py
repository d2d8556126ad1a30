"""
Session management for conversations.

The store owns every Session. Callers read snapshots and mutate only
through the store's methods, which serialize access with one lock so the
agent loop and background compaction can share it safely.
"""

import copy
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from ..llm.base import LLMMessage, ToolCall

logger = structlog.get_logger()

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def session_filename(key: str) -> str:
    """File name used to persist a session key."""
    return _UNSAFE_FILENAME_CHARS.sub("_", key) + ".json"


@dataclass
class Session:
    """A conversation thread identified by an opaque key."""

    key: str
    messages: list[LLMMessage] = field(default_factory=list)
    summary: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    # Bumped whenever history is dropped other than by compaction itself.
    epoch: int = 0

    def snapshot(self) -> "Session":
        """Deep copy that shares no mutable state with this session."""
        return Session(
            key=self.key,
            messages=copy.deepcopy(self.messages),
            summary=self.summary,
            created_at=self.created_at,
            updated_at=self.updated_at,
            epoch=self.epoch,
        )


@dataclass
class CompactionSnapshot:
    """History, summary and epoch read together under the store lock."""

    messages: list[LLMMessage]
    summary: str
    epoch: int


class SessionRecord(BaseModel):
    """On-disk representation of a session."""

    key: str
    messages: list[LLMMessage] = Field(default_factory=list)
    summary: str = ""
    created: datetime
    updated: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionRecord":
        return cls(
            key=session.key,
            messages=session.messages,
            summary=session.summary,
            created=session.created_at,
            updated=session.updated_at,
        )

    def to_session(self) -> Session:
        return Session(
            key=self.key,
            messages=list(self.messages),
            summary=self.summary,
            created_at=self.created,
            updated_at=self.updated,
        )


class SessionStore:
    """Durable, per-key ordered message history plus a rolling summary."""

    def __init__(self, storage_dir: str | Path | None = None):
        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self.storage_dir = Path(storage_dir).expanduser() if storage_dir else None

        if self.storage_dir is not None:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self._load_all()

    def _get_or_create_locked(self, key: str) -> Session:
        session = self._sessions.get(key)
        if session is None:
            session = Session(key=key)
            self._sessions[key] = session
            logger.info("Created new session", session_key=key)
        return session

    def get_or_create(self, key: str) -> Session:
        """Return a snapshot of the session, creating it on first access."""
        with self._lock:
            return self._get_or_create_locked(key).snapshot()

    def append(
        self,
        key: str,
        role: str,
        content: str,
        tool_calls: list[ToolCall] | None = None,
        tool_call_id: str | None = None,
    ) -> None:
        """Append one message to the end of a session's history."""
        with self._lock:
            session = self._get_or_create_locked(key)
            session.messages.append(LLMMessage(
                role=role,  # type: ignore[arg-type]
                content=content,
                tool_calls=copy.deepcopy(tool_calls),
                tool_call_id=tool_call_id,
            ))
            session.updated_at = _utcnow()

    def history(self, key: str) -> list[LLMMessage]:
        """Copy of the session's messages, oldest first."""
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return []
            return copy.deepcopy(session.messages)

    def history_length(self, key: str) -> int:
        with self._lock:
            session = self._sessions.get(key)
            return len(session.messages) if session else 0

    def summary(self, key: str) -> str:
        with self._lock:
            session = self._sessions.get(key)
            return session.summary if session else ""

    def set_summary(self, key: str, text: str) -> None:
        with self._lock:
            session = self._get_or_create_locked(key)
            session.summary = text
            session.updated_at = _utcnow()

    def truncate(self, key: str, keep_last_n: int) -> None:
        """Drop everything but the last ``keep_last_n`` messages."""
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return
            if keep_last_n <= 0:
                session.messages = []
            elif len(session.messages) > keep_last_n:
                session.messages = session.messages[-keep_last_n:]
            session.epoch += 1
            session.updated_at = _utcnow()

    def snapshot_for_compaction(self, key: str) -> CompactionSnapshot:
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return CompactionSnapshot(messages=[], summary="", epoch=0)
            return CompactionSnapshot(
                messages=copy.deepcopy(session.messages),
                summary=session.summary,
                epoch=session.epoch,
            )

    def apply_compaction(
        self,
        key: str,
        summary: str,
        summarized_count: int,
        epoch: int | None = None,
    ) -> bool:
        """Replace the summary and drop the oldest ``summarized_count`` messages.

        Messages appended after the compactor took its snapshot sit past the
        summarized prefix and are kept. When ``epoch`` no longer matches (the
        session was cleared or truncated meanwhile) nothing is changed and
        False is returned.
        """
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return False
            if epoch is not None and session.epoch != epoch:
                logger.info(
                    "Discarding stale compaction",
                    session_key=key,
                    snapshot_epoch=epoch,
                    current_epoch=session.epoch,
                )
                return False
            session.summary = summary
            session.messages = session.messages[summarized_count:]
            session.updated_at = _utcnow()
            return True

    def clear(self, key: str) -> None:
        """Forget a session's history and summary, keeping the key."""
        with self._lock:
            session = self._get_or_create_locked(key)
            session.messages = []
            session.summary = ""
            session.epoch += 1
            session.updated_at = _utcnow()

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def persist(self, key: str) -> Path | None:
        """Write the session to its file. Safe to call repeatedly.

        Returns the written path, or None when the store is memory-only or
        the key is unknown. Raises OSError if the file cannot be written.
        """
        if self.storage_dir is None:
            return None

        # Holding the write lock across snapshot and write keeps files from
        # being overwritten by an older snapshot.
        with self._write_lock:
            with self._lock:
                session = self._sessions.get(key)
                if session is None:
                    return None
                data = SessionRecord.from_session(session).model_dump_json(indent=2)

            path = self.storage_dir / session_filename(key)
            fd, tmp_name = tempfile.mkstemp(dir=self.storage_dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(data)
                os.replace(tmp_name, path)
            except OSError:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

        return path

    def _load_all(self) -> None:
        """Load every persisted session; unreadable files are skipped."""
        if self.storage_dir is None:
            return

        for path in sorted(self.storage_dir.glob("*.json")):
            try:
                record = SessionRecord.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Skipping corrupt session file", path=str(path), error=str(e))
                continue
            self._sessions[record.key] = record.to_session()

        logger.info("Loaded sessions", count=len(self._sessions), storage=str(self.storage_dir))
