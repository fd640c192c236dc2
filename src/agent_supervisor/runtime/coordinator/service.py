"""Coordinator facade wiring session events to the decision loop."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Callable, Optional, Union

from ...errors import InactiveSessionError, UnknownSessionError
from ...oracle.client import Oracle, create_oracle
from ...oracle.config import get_oracle_runtime_config, resolve_oracle_provider
from ...oracle.schemas import CoordinationResponse
from ..config import SupervisorSettings
from ..domain.models import (
    SupervisionLevel,
    TaskContext,
    normalize_agent_type,
    normalize_supervision_level,
)
from ..events.bus import EventBus
from ..terminal.sanitizer import clean_for_display, extract_dev_server_url
from ..terminal.service import TerminalService
from .decision_loop import ChatCallback, DecisionLoop, SessionControl
from .registry import PendingDecision, TaskRegistry
from .watchdog import IdleWatchdog

logger = logging.getLogger(__name__)

# Only these events are worth holding until the session is registered.
_BUFFERED_EVENTS = {"blocked", "task_complete", "error"}


@dataclass
class _BufferedEvent:
    event: str
    data: Any
    received_at: float = field(default_factory=time.time)


def _payload(data: Any) -> dict[str, Any]:
    if is_dataclass(data) and not isinstance(data, type):
        return asdict(data)
    if isinstance(data, dict):
        return dict(data)
    return {} if data is None else {"value": str(data)}


class SwarmCoordinator:
    """Supervise many sessions: route their events, hold the confirmation queue
    and run the idle watchdog.

    Every session's events arrive on that session's own dispatcher thread, so
    different sessions arbitrate in parallel while one session's events are
    handled in order.
    """

    def __init__(
        self,
        terminal: SessionControl,
        oracle: Oracle,
        *,
        settings: Optional[SupervisorSettings] = None,
        bus: Optional[EventBus] = None,
        registry: Optional[TaskRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or SupervisorSettings()
        self.terminal = terminal
        self.bus = bus
        self.registry = registry or TaskRegistry()
        self._clock = clock
        self.decisions = DecisionLoop(
            self.registry,
            terminal,
            oracle,
            bus,
            max_auto_responses=self.settings.max_auto_responses,
            supervision_level=self.settings.supervision_level,
        )
        self.watchdog = IdleWatchdog(
            self.decisions,
            idle_threshold_seconds=self.settings.idle_threshold_seconds,
            max_idle_checks=self.settings.max_idle_checks,
            scan_interval_seconds=self.settings.idle_scan_interval_seconds,
            clock=clock,
        )
        self._lock = threading.Lock()
        self._unregistered: dict[str, list[_BufferedEvent]] = {}
        self._timers: list[threading.Timer] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Subscribe to session events and start the idle watchdog."""
        subscribe = getattr(self.terminal, "on_session_event", None)
        if self._unsubscribe is None and callable(subscribe):
            self._unsubscribe = subscribe(self.handle_session_event)
        self.watchdog.ensure_worker()
        logger.info("Coordinator started (supervision level: %s)", self.decisions.supervision_level)

    def stop(self) -> None:
        """Stop the watchdog, drop subscriptions and clear all in-memory state."""
        self.watchdog.shutdown()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
            self._unregistered.clear()
        for timer in timers:
            timer.cancel()
        self.registry.clear()
        logger.info("Coordinator stopped")

    def set_chat_callback(self, callback: Optional[ChatCallback]) -> None:
        self.decisions.chat = callback

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def register_task(
        self,
        session_id: str,
        *,
        agent_type: str = "claude",
        label: str = "",
        original_task: str = "",
        workdir: str = "",
    ) -> TaskContext:
        """Start tracking a session and replay any events it produced beforehand."""
        now = self._clock()
        ctx = TaskContext(
            session_id=session_id,
            agent_type=normalize_agent_type(agent_type),
            label=label or session_id,
            original_task=original_task,
            workdir=workdir,
            registered_at=now,
            last_activity_at=now,
        )
        self.registry.register(session_id, ctx)
        self.decisions.broadcast(
            "task_registered",
            session_id,
            {"agent_type": ctx.agent_type, "label": ctx.label, "original_task": original_task},
        )
        with self._lock:
            buffered = self._unregistered.pop(session_id, [])
        for entry in buffered:
            self.handle_session_event(session_id, entry.event, entry.data)
        return ctx

    def get_task_context(self, session_id: str) -> Optional[TaskContext]:
        return self.registry.get(session_id)

    def list_task_contexts(self) -> list[TaskContext]:
        return self.registry.list()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _buffer(self, session_id: str, event: str, data: Any) -> None:
        with self._lock:
            self._unregistered.setdefault(session_id, []).append(_BufferedEvent(event, data, self._clock()))
            timer = threading.Timer(self.settings.unregistered_buffer_seconds, self._expire_buffer, args=(session_id,))
            timer.daemon = True
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def _expire_buffer(self, session_id: str) -> None:
        with self._lock:
            buffered = self._unregistered.pop(session_id, [])
        if not buffered:
            return
        if session_id in self.registry:
            for entry in buffered:
                self.handle_session_event(session_id, entry.event, entry.data)
            return
        logger.warning("Discarding %d buffered events for unregistered session %s", len(buffered), session_id)

    def handle_session_event(self, session_id: str, event: str, data: Any = None) -> None:
        """Route one session event; events for unknown sessions are buffered or dropped."""
        ctx = self.registry.get(session_id)
        if ctx is None:
            if event in _BUFFERED_EVENTS:
                self._buffer(session_id, event, data)
            return

        ctx.last_activity_at = self._clock()
        ctx.idle_check_count = 0
        try:
            self._dispatch(session_id, ctx, event, data)
        except (InactiveSessionError, UnknownSessionError) as exc:
            logger.warning("Could not act on %s event for %s: %s", event, session_id, exc)

    def _dispatch(self, session_id: str, ctx: TaskContext, event: str, data: Any) -> None:
        if event == "blocked":
            self.decisions.handle_blocked(session_id, ctx, data)
        elif event == "task_complete":
            self.decisions.broadcast("turn_complete", session_id, _payload(data))
            self.decisions.handle_turn_complete(session_id, ctx, data)
        elif event == "error":
            ctx.status = "error"
            payload = _payload(data)
            self.decisions.broadcast("error", session_id, payload)
            message = clean_for_display(str(payload.get("message") or "")) or "unknown error"
            self.decisions.notify_chat(f'"{ctx.label}" hit an error: {message}')
        elif event == "stopped":
            if ctx.status == "active":
                ctx.status = "stopped"
            self.decisions.broadcast("stopped", session_id, _payload(data))
            self.registry.remove(session_id)
        elif event == "tool_running":
            self._on_tool_running(session_id, ctx, _payload(data))
        else:
            self.decisions.broadcast(event, session_id, _payload(data))

    def _on_tool_running(self, session_id: str, ctx: TaskContext, payload: dict[str, Any]) -> None:
        self.decisions.broadcast("tool_running", session_id, payload)
        now = self._clock()
        last = self.registry.last_tool_notification.get(session_id)
        if last is not None and now - last < self.settings.tool_notification_interval_seconds:
            return
        self.registry.last_tool_notification[session_id] = now
        description = payload.get("description") or payload.get("tool_name") or "an external tool"
        dev_url = extract_dev_server_url(self.decisions.recent_output(session_id))
        suffix = f" Dev server running at {dev_url}." if dev_url else ""
        self.decisions.notify_chat(
            f"[{ctx.label}] Running {description}.{suffix} The agent is working outside the terminal."
        )

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def get_supervision_level(self) -> SupervisionLevel:
        return self.decisions.supervision_level

    def set_supervision_level(self, level: str) -> SupervisionLevel:
        """Switch how blocked prompts are handled; unknown levels raise ``ValueError``."""
        if str(level or "").strip().lower() not in {"autonomous", "confirm", "notify"}:
            raise ValueError(f"Unsupported supervision level: {level}")
        normalized = normalize_supervision_level(level)
        self.decisions.supervision_level = normalized
        self.decisions.broadcast("supervision_changed", "*", {"level": normalized})
        logger.info("Supervision level set to %s", normalized)
        return normalized

    def get_pending_confirmations(self) -> list[PendingDecision]:
        return self.registry.list_pending()

    def confirm_decision(
        self,
        session_id: str,
        approved: bool,
        override: Optional[Union[CoordinationResponse, dict[str, Any]]] = None,
    ) -> Optional[CoordinationResponse]:
        """Approve (optionally overriding) or reject a queued suggestion.

        Raises:
            NoPendingDecisionError: If nothing is queued for ``session_id``.
            ValueError: If an approved override has nothing to send.
            InactiveSessionError: If the approved decision cannot be written.
        """
        return self.decisions.confirm(session_id, approved, override)

    def snapshot(self) -> dict[str, Any]:
        return {
            "tasks": [ctx.to_dict() for ctx in self.registry.list()],
            "supervision_level": self.decisions.supervision_level,
            "pending_count": len(self.registry.list_pending()),
        }


def create_coordinator(
    config: Optional[dict[str, Any]] = None,
    *,
    terminal: Optional[TerminalService] = None,
    oracle: Optional[Oracle] = None,
    bus: Optional[EventBus] = None,
    oracle_provider: Optional[str] = None,
) -> SwarmCoordinator:
    """Build a coordinator, its session manager and its oracle from a config mapping."""
    config = config or {}
    settings = SupervisorSettings.from_config(config)
    if terminal is None:
        terminal = TerminalService(
            max_log_lines=settings.max_log_lines,
            initial_task_settle_seconds=settings.initial_task_settle_seconds,
        )
    if oracle is None:
        spec = resolve_oracle_provider(get_oracle_runtime_config(config), oracle_provider)
        oracle = create_oracle(spec)
    return SwarmCoordinator(terminal, oracle, settings=settings, bus=bus or EventBus())
