"""Shared fakes for decision-loop and coordinator tests."""

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Any, Optional, Sequence

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from agent_supervisor.errors import InactiveSessionError, UnknownSessionError  # noqa: E402
from agent_supervisor.runtime.domain.models import TaskContext  # noqa: E402
from agent_supervisor.runtime.events.bus import EventBus  # noqa: E402
from agent_supervisor.runtime.events.ws import WebSocketHub  # noqa: E402


class FakeTerminal:
    """Records every call the decision loop makes against a session."""

    def __init__(self, output: str = "") -> None:
        self.output = output
        self.sent: list[tuple[str, str]] = []
        self.keys: list[tuple[str, list[str]]] = []
        self.stopped: list[str] = []
        self.inactive: set[str] = set()
        self.unknown: set[str] = set()

    def _check(self, session_id: str) -> None:
        if session_id in self.unknown:
            raise UnknownSessionError(session_id)
        if session_id in self.inactive:
            raise InactiveSessionError(session_id)

    def send(self, session_id: str, text: str) -> None:
        self._check(session_id)
        self.sent.append((session_id, text))

    def send_keys(self, session_id: str, keys: Sequence[str]) -> None:
        self._check(session_id)
        self.keys.append((session_id, list(keys)))

    def stop(self, session_id: str) -> None:
        if session_id in self.unknown:
            raise UnknownSessionError(session_id)
        self.stopped.append(session_id)

    def get_output(self, session_id: str, lines: Optional[int] = None) -> str:
        if session_id in self.unknown:
            raise UnknownSessionError(session_id)
        return self.output


class FakeOracle:
    """Returns canned answers in order and counts calls; can block until released."""

    def __init__(self, *answers: Any) -> None:
        self.answers = list(answers)
        self.prompts: list[str] = []
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()

    @property
    def calls(self) -> int:
        return len(self.prompts)

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        answer = self.answers.pop(0) if self.answers else '{"action": "escalate", "reasoning": "default"}'
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def terminal() -> FakeTerminal:
    return FakeTerminal(output="$ npm test\n12 passing\n")


@pytest.fixture
def bus() -> EventBus:
    return EventBus(hub=WebSocketHub())


@pytest.fixture
def events(bus: EventBus) -> list[dict[str, Any]]:
    received: list[dict[str, Any]] = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def task_ctx() -> TaskContext:
    return TaskContext(
        session_id="sess-1",
        agent_type="claude",
        label="fix-tests",
        original_task="Fix the failing unit tests",
        workdir="/tmp/repo",
    )
