"""
Agent module - the brain of the system.

Includes:
- AgentLoop: Tool-calling state machine driven by the message bus
- SessionStore: Persistent conversation sessions
- Compactor: Background summarization of long histories
- ContextBuilder: System prompt and message assembly
- SubagentManager: Background tasks that report back to a conversation
"""

from .core import AgentLoop, TurnResult, TurnState
from .session import Session, SessionStore
from .compaction import CompactionConfig, CompactionResult, Compactor
from .context import ContextBuilder
from .subagent import SubagentManager

__all__ = [
    "AgentLoop",
    "TurnResult",
    "TurnState",
    "Session",
    "SessionStore",
    "CompactionConfig",
    "CompactionResult",
    "Compactor",
    "ContextBuilder",
    "SubagentManager",
]
