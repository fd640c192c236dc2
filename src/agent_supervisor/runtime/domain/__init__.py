"""Domain models for supervised sessions and decision state."""

from .models import (
    BlockedEvent,
    DecisionRecord,
    PromptInfo,
    TaskContext,
    TerminalSession,
    ToolRunningEvent,
    TurnCompleteEvent,
)

__all__ = [
    "TerminalSession",
    "TaskContext",
    "DecisionRecord",
    "PromptInfo",
    "BlockedEvent",
    "TurnCompleteEvent",
    "ToolRunningEvent",
]
