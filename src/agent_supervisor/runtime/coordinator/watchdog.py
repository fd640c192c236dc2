"""Background scan that checks on sessions which stopped producing events."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from ...errors import SupervisorError
from ...oracle.client import consult
from ..domain.models import DecisionRecord, TaskContext
from ..terminal.sanitizer import clean_for_display
from .decision_loop import DecisionLoop
from .prompts import build_idle_check_prompt

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_LINES = 20


class IdleWatchdog:
    """Periodically ask the oracle about tasks that have gone quiet.

    A task is idle once ``idle_threshold_seconds`` pass without events and
    without any change in its output tail. Each scan that finds it still idle
    counts one idle check; past ``max_idle_checks`` the task is escalated
    without another oracle call.
    """

    def __init__(
        self,
        loop: DecisionLoop,
        *,
        idle_threshold_seconds: float = 180.0,
        max_idle_checks: int = 3,
        scan_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._decisions = loop
        self._registry = loop.registry
        self.idle_threshold_seconds = idle_threshold_seconds
        self.max_idle_checks = max_idle_checks
        self.scan_interval_seconds = scan_interval_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def ensure_worker(self) -> None:
        """Start the background scan loop when not already running."""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name="idle-watchdog")
            self._thread.start()

    def shutdown(self, *, timeout: float = 5.0) -> None:
        with self._lock:
            self._stop.set()
            thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=max(timeout, 0.0))
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.scan_interval_seconds):
            try:
                self.scan_once()
            except Exception:
                logger.exception("Idle watchdog scan failed")

    def scan_once(self) -> int:
        """Run one scan over active tasks; returns how many idle checks were made."""
        now = self._clock()
        checked = 0
        for ctx in self._registry.list():
            if ctx.status != "active":
                continue
            idle_seconds = now - ctx.last_activity_at
            if idle_seconds < self.idle_threshold_seconds:
                continue
            # Idle bookkeeping never overlaps a decision in progress.
            if not self._registry.try_begin(ctx.session_id):
                continue
            try:
                if self._scan_task(ctx, now, idle_seconds):
                    checked += 1
            finally:
                self._registry.finish(ctx.session_id)
        return checked

    def _scan_task(self, ctx: TaskContext, now: float, idle_seconds: float) -> bool:
        if self._has_fresh_output(ctx):
            ctx.last_activity_at = now
            ctx.idle_check_count = 0
            logger.debug("Idle watchdog: %s has fresh output", ctx.session_id)
            return False

        ctx.idle_check_count += 1
        idle_minutes = round(idle_seconds / 60)
        logger.info(
            "Idle watchdog: %s idle for %dm (check %d/%d)",
            ctx.session_id,
            idle_minutes,
            ctx.idle_check_count,
            self.max_idle_checks,
        )
        if ctx.idle_check_count > self.max_idle_checks:
            self._force_escalate(ctx, idle_minutes)
            return True
        try:
            self.check_idle_session(ctx, idle_minutes)
        except SupervisorError:
            logger.warning("Idle check for %s could not act on the session", ctx.session_id, exc_info=True)
        return True

    def _has_fresh_output(self, ctx: TaskContext) -> bool:
        try:
            current = self._decisions.terminal.get_output(ctx.session_id, _OUTPUT_TAIL_LINES)
        except SupervisorError:
            return False
        last_seen = self._registry.last_seen_output.get(ctx.session_id)
        self._registry.last_seen_output[ctx.session_id] = current
        return last_seen is not None and current != last_seen

    def _force_escalate(self, ctx: TaskContext, idle_minutes: int) -> None:
        ctx.record(
            DecisionRecord(
                kind="escalate",
                reasoning=f"Force-escalated after {self.max_idle_checks} idle checks with no activity",
                event="idle_watchdog",
                prompt_text=f"Session idle for {idle_minutes} minutes",
            )
        )
        self._decisions.broadcast(
            "escalation",
            ctx.session_id,
            {"reason": "idle_watchdog_max_checks", "idle_minutes": idle_minutes, "idle_check_count": ctx.idle_check_count},
        )
        self._decisions.notify_chat(
            f"[{ctx.label}] Session has been idle for {idle_minutes} minutes with no progress. Needs your attention."
        )

    def check_idle_session(self, ctx: TaskContext, idle_minutes: int) -> None:
        """Ask the oracle what an idle session needs and act on the answer.

        The caller holds the session's in-flight guard.
        """
        session_id = ctx.session_id
        recent = clean_for_display(self._decisions.recent_output(session_id))
        prompt = build_idle_check_prompt(ctx, recent, idle_minutes, ctx.idle_check_count, self.max_idle_checks)
        result = consult(self._decisions.oracle, prompt, allow_ignore=True)
        decision = result.decision
        if decision is None:
            self._decisions.notify_chat(
                f"[{ctx.label}] Session idle for {idle_minutes}m, couldn't determine status. Needs your attention."
            )
            return
        ctx.record(
            DecisionRecord(
                kind=decision.action,  # type: ignore[arg-type]
                reasoning=decision.reasoning,
                event="idle_watchdog",
                prompt_text=f"Session idle for {idle_minutes} minutes",
                response=decision.payload,
            )
        )
        self._decisions.broadcast(
            "idle_check_decision",
            session_id,
            {
                "action": decision.action,
                "idle_minutes": idle_minutes,
                "idle_check_number": ctx.idle_check_count,
                "reasoning": decision.reasoning,
            },
        )
        if decision.action == "respond":
            nudge = f"Sent keys: {', '.join(decision.keys)}" if decision.use_keys else f"Nudged: {decision.response or ''}"
            self._decisions.notify_chat(f"[{ctx.label}] Idle for {idle_minutes}m: {nudge}")
        elif decision.action == "escalate":
            self._decisions.notify_chat(f"[{ctx.label}] Idle for {idle_minutes}m, needs your attention: {decision.reasoning}")
        elif decision.action == "ignore":
            logger.info("Idle check for %s: still working (%s)", session_id, decision.reasoning)
        self._decisions.execute_decision(session_id, decision)
