"""Pluggable classification of terminal output into session events."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from ..domain.models import BlockedEvent, PromptInfo, SessionEvent, ToolRunningEvent, TurnCompleteEvent
from .sanitizer import strip_control_sequences

# Prompts that require an answer before the agent can continue.
_DEFAULT_BLOCKING_PATTERNS: tuple[tuple[str, str], ...] = (
    ("yes_no", r"\((?:y/n|Y/n|y/N|yes/no)\)\s*\??\s*:?\s*$"),
    ("yes_no", r"\[(?:y/n|Y/n|y/N|yes/no)\]\s*\??\s*:?\s*$"),
    ("permission", r"Do you want to (?:proceed|make this edit|create|run|allow)[^\n]*\?\s*$"),
    ("permission", r"Allow (?:this|the following)?[^\n]*\?\s*$"),
    ("menu", r"(?:❯|>)\s*1\.\s+Yes\b"),
    ("continue", r"(?:Press|Hit) (?:Enter|Return|any key) to continue[^\n]*$"),
    ("login", r"^\s*(?:Please )?(?:log ?in|sign ?in) (?:to|with|at)\b[^\n]*$"),
)

# The agent is back at its own input prompt and waiting for the next instruction.
_DEFAULT_IDLE_PATTERNS: tuple[str, ...] = (
    r"^\s*(?:❯|>)\s*$",
    r"^\s*[│|]\s*>\s*[│|]?\s*$",
    r"\?\s+for\s+shortcuts\s*$",
    r"^\s*aider>\s*$",
)

_DEFAULT_TOOL_PATTERNS: tuple[tuple[str, str], ...] = (
    ("browser", r"(?:Launching|Opening) (?:browser|chromium|playwright)"),
    ("dev_server", r"(?:Starting|Running) (?:the )?dev server"),
    ("mcp", r"Calling MCP tool[:\s]+(\S+)"),
)


class OutputClassifier(Protocol):
    """Map a chunk of raw output onto a session event, or ``None``."""

    def classify(self, chunk: str, recent_output: str) -> Optional[SessionEvent]:
        ...


@dataclass(frozen=True)
class AutoResponseRule:
    """Answer prompts that match ``pattern`` without consulting the oracle.

    Exactly one of ``response`` (text followed by Enter) or ``keys`` is used.
    """
    pattern: str
    response: Optional[str] = None
    keys: tuple[str, ...] = ()
    description: str = ""

    def matches(self, prompt: str) -> bool:
        return re.search(self.pattern, prompt, re.IGNORECASE) is not None


def _compile(patterns: Sequence[str]) -> list[re.Pattern[str]]:
    return [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns]


@dataclass
class RegexOutputClassifier:
    """Regex-catalog classifier used when no agent-specific classifier is set.

    Blocking prompts win over idle prompts, which win over tool activity. Only
    the tail of the recent output is inspected so stale prompts scrolled above
    new output do not fire again.
    """
    blocking_patterns: Sequence[tuple[str, str]] = _DEFAULT_BLOCKING_PATTERNS
    idle_patterns: Sequence[str] = _DEFAULT_IDLE_PATTERNS
    tool_patterns: Sequence[tuple[str, str]] = _DEFAULT_TOOL_PATTERNS
    tail_lines: int = 8
    _blocking: list[tuple[str, re.Pattern[str]]] = field(init=False, repr=False)
    _idle: list[re.Pattern[str]] = field(init=False, repr=False)
    _tools: list[tuple[str, re.Pattern[str]]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._blocking = [(kind, re.compile(p, re.IGNORECASE | re.MULTILINE)) for kind, p in self.blocking_patterns]
        self._idle = _compile(self.idle_patterns)
        self._tools = [(name, re.compile(p, re.IGNORECASE)) for name, p in self.tool_patterns]

    def _tail(self, text: str) -> str:
        lines = [line.rstrip() for line in strip_control_sequences(text).split("\n")]
        lines = [line for line in lines if line.strip()]
        return "\n".join(lines[-self.tail_lines:])

    def classify(self, chunk: str, recent_output: str) -> Optional[SessionEvent]:
        tail = self._tail(recent_output or chunk)
        if not tail:
            return None
        last_line = tail.split("\n")[-1]
        for kind, pattern in self._blocking:
            match = pattern.search(tail)
            if match:
                prompt = self._prompt_text(tail, match)
                return BlockedEvent(prompt_info=PromptInfo(prompt=prompt, type=kind))
        for pattern in self._idle:
            if pattern.search(last_line):
                return TurnCompleteEvent()
        chunk_text = strip_control_sequences(chunk)
        for name, pattern in self._tools:
            match = pattern.search(chunk_text)
            if match:
                description = match.group(1) if match.groups() else match.group(0)
                return ToolRunningEvent(tool_name=name, description=description.strip())
        return None

    @staticmethod
    def _prompt_text(tail: str, match: re.Match[str]) -> str:
        # Use the line the prompt sits on plus the line above for context.
        lines = tail[: match.end()].split("\n")
        return "\n".join(line.strip() for line in lines[-2:] if line.strip())


_SHELL_IDLE_PATTERN = r"^[^\n]{0,80}[$#%]\s*$"


def classifier_for_agent(agent_type: str) -> RegexOutputClassifier:
    """Build the default classifier for an agent type.

    Plain shells signal end of turn by printing their ``$``/``#`` prompt.
    """
    if agent_type == "shell":
        return RegexOutputClassifier(idle_patterns=(*_DEFAULT_IDLE_PATTERNS, _SHELL_IDLE_PATTERN))
    return RegexOutputClassifier()
