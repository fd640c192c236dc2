"""Domain model dataclasses for supervised sessions and their task contexts."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

SessionStatus = Literal["starting", "active", "blocked", "completed", "stopped", "failed"]
TaskStatus = Literal["active", "completed", "stopped", "error"]
DecisionKind = Literal["auto_resolved", "respond", "escalate", "complete", "ignore"]
SupervisionLevel = Literal["autonomous", "confirm", "notify"]

_VALID_SUPERVISION_LEVELS = {"autonomous", "confirm", "notify"}

# Accepted spellings for each supported agent CLI.
_AGENT_TYPE_ALIASES: dict[str, str] = {
    "shell": "shell",
    "bash": "shell",
    "sh": "shell",
    "claude": "claude",
    "claude-code": "claude",
    "claudecode": "claude",
    "codex": "codex",
    "openai": "codex",
    "gemini": "gemini",
    "google": "gemini",
    "aider": "aider",
}


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def normalize_agent_type(value: str) -> str:
    """Map a user-provided agent type onto one of the supported CLIs.

    Unknown values fall back to ``"claude"``.
    """
    return _AGENT_TYPE_ALIASES.get(str(value or "").strip().lower(), "claude")


def normalize_supervision_level(value: Any, default: str = "autonomous") -> SupervisionLevel:
    level = str(value or "").strip().lower()
    return level if level in _VALID_SUPERVISION_LEVELS else default  # type: ignore[return-value]


@dataclass
class TerminalSession:
    """Runtime record for one supervised agent process."""
    id: str = field(default_factory=lambda: _id("sess"))
    agent_type: str = "shell"
    label: str = ""
    workdir: str = ""
    status: SessionStatus = "starting"
    command: list[str] = field(default_factory=list)
    pid: Optional[int] = None
    cols: int = 120
    rows: int = 36
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    exit_code: Optional[int] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize a terminal session record."""
        return asdict(self)


@dataclass(frozen=True)
class DecisionRecord:
    """One entry of a task's append-only decision audit trail."""
    kind: DecisionKind
    reasoning: str
    event: str = "blocked"
    prompt_text: str = ""
    response: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TaskContext:
    """Decision-level metadata mirroring a supervised session.

    Instances are registered once per session and mutated in place by the
    decision loop so every reader sees the same view.
    """
    session_id: str
    agent_type: str = "claude"
    label: str = ""
    original_task: str = ""
    workdir: str = ""
    status: TaskStatus = "active"
    decisions: list[DecisionRecord] = field(default_factory=list)
    auto_resolved_count: int = 0
    registered_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    idle_check_count: int = 0

    def record(self, decision: DecisionRecord) -> DecisionRecord:
        """Append a decision to the audit trail."""
        self.decisions.append(decision)
        return decision

    def recent_decisions(self, limit: int = 5) -> list[DecisionRecord]:
        """Return the latest decisions that were not handled by auto-response rules."""
        return [d for d in self.decisions if d.kind != "auto_resolved"][-limit:]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["decisions"] = [d.to_dict() for d in self.decisions]
        return data


@dataclass(frozen=True)
class PromptInfo:
    """Details of the interactive prompt a session is waiting on."""
    prompt: str = ""
    type: Optional[str] = None
    instructions: Optional[str] = None

    @property
    def text(self) -> str:
        return self.prompt or self.instructions or ""


@dataclass(frozen=True)
class BlockedEvent:
    """The process is displaying an interactive prompt and awaiting input."""
    prompt_info: PromptInfo = field(default_factory=PromptInfo)
    auto_responded: bool = False

    @classmethod
    def from_data(cls, data: Any) -> "BlockedEvent":
        """Coerce an event payload (dataclass or mapping) into a ``BlockedEvent``."""
        if isinstance(data, BlockedEvent):
            return data
        raw = data if isinstance(data, dict) else {}
        info = raw.get("prompt_info", raw.get("promptInfo"))
        if isinstance(info, PromptInfo):
            prompt_info = info
        elif isinstance(info, dict):
            prompt_info = PromptInfo(
                prompt=str(info.get("prompt") or ""),
                type=(str(info["type"]) if info.get("type") is not None else None),
                instructions=(str(info["instructions"]) if info.get("instructions") is not None else None),
            )
        else:
            prompt_info = PromptInfo()
        auto = raw.get("auto_responded", raw.get("autoResponded", False))
        return cls(prompt_info=prompt_info, auto_responded=bool(auto))


@dataclass(frozen=True)
class TurnCompleteEvent:
    """The agent finished producing output for the current instruction."""
    response: str = ""

    @classmethod
    def from_data(cls, data: Any) -> "TurnCompleteEvent":
        if isinstance(data, TurnCompleteEvent):
            return data
        raw = data if isinstance(data, dict) else {}
        return cls(response=str(raw.get("response") or ""))


@dataclass(frozen=True)
class ToolRunningEvent:
    """The agent is working through an external tool outside the terminal UI."""
    tool_name: Optional[str] = None
    description: Optional[str] = None


SessionEvent = Union[BlockedEvent, TurnCompleteEvent, ToolRunningEvent]
