"""In-memory registry of task contexts and per-session coordination state."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from ...oracle.schemas import CoordinationResponse
from ..domain.models import TaskContext


@dataclass
class PendingDecision:
    """Oracle suggestion waiting for a human to approve or reject it."""
    session_id: str
    prompt_text: str
    recent_output: str
    suggested: CoordinationResponse
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "prompt_text": self.prompt_text,
            "recent_output": self.recent_output,
            "suggested": self.suggested.to_wire(),
            "created_at": self.created_at,
        }


class TaskRegistry:
    """Session id to :class:`TaskContext` map plus in-flight and throttling state.

    Contexts are handed out by reference and mutated in place. The lock only
    guards the maps themselves; ``try_begin`` is the one atomic check-and-add
    that keeps a session to a single arbitration at a time.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, TaskContext] = {}
        self._in_flight: set[str] = set()
        self._pending: dict[str, PendingDecision] = {}
        self.last_seen_output: dict[str, str] = {}
        self.last_tool_notification: dict[str, float] = {}

    def register(self, session_id: str, ctx: TaskContext) -> TaskContext:
        with self._lock:
            self._tasks[session_id] = ctx
        return ctx

    def get(self, session_id: str) -> Optional[TaskContext]:
        with self._lock:
            return self._tasks.get(session_id)

    def remove(self, session_id: str) -> Optional[TaskContext]:
        """Drop a session's context and every piece of per-session state."""
        with self._lock:
            self._pending.pop(session_id, None)
            self.last_seen_output.pop(session_id, None)
            self.last_tool_notification.pop(session_id, None)
            return self._tasks.pop(session_id, None)

    def list(self) -> list[TaskContext]:
        with self._lock:
            return list(self._tasks.values())

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    # In-flight guard

    def try_begin(self, session_id: str) -> bool:
        """Mark ``session_id`` as being arbitrated; ``False`` if it already is."""
        with self._lock:
            if session_id in self._in_flight:
                return False
            self._in_flight.add(session_id)
            return True

    def finish(self, session_id: str) -> None:
        with self._lock:
            self._in_flight.discard(session_id)

    def is_in_flight(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._in_flight

    # Confirmation queue

    def set_pending(self, pending: PendingDecision) -> None:
        with self._lock:
            self._pending[pending.session_id] = pending

    def pop_pending(self, session_id: str) -> Optional[PendingDecision]:
        with self._lock:
            return self._pending.pop(session_id, None)

    def list_pending(self) -> list[PendingDecision]:
        with self._lock:
            return list(self._pending.values())

    def clear(self) -> None:
        with self._lock:
            self._tasks.clear()
            self._in_flight.clear()
            self._pending.clear()
            self.last_seen_output.clear()
            self.last_tool_notification.clear()
