"""Arbitration of blocked and turn-complete events for supervised sessions."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol, Sequence, Union

from ...errors import NoPendingDecisionError, SupervisorError
from ...oracle.client import Oracle, consult
from ...oracle.schemas import CoordinationResponse
from ..domain.models import (
    BlockedEvent,
    DecisionRecord,
    SupervisionLevel,
    TaskContext,
    TurnCompleteEvent,
    normalize_supervision_level,
)
from ..events.bus import EventBus
from ..terminal.sanitizer import clean_for_display, extract_completion_summary
from .prompts import build_coordination_prompt, build_turn_complete_prompt
from .registry import PendingDecision, TaskRegistry

logger = logging.getLogger(__name__)

MAX_AUTO_RESPONSES = 10
RECENT_OUTPUT_LINES = 50

ChatCallback = Callable[[str], None]


class SessionControl(Protocol):
    """The part of the session manager the decision loop drives."""

    def send(self, session_id: str, text: str) -> None:
        ...

    def send_keys(self, session_id: str, keys: Sequence[str]) -> None:
        ...

    def stop(self, session_id: str) -> Any:
        ...

    def get_output(self, session_id: str, lines: Optional[int] = None) -> str:
        ...


def _excerpt(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def _override_decision(override: Union[CoordinationResponse, dict[str, Any]]) -> CoordinationResponse:
    if isinstance(override, CoordinationResponse):
        return override
    keys = [str(key) for key in override.get("keys") or []]
    flag = override.get("use_keys", override.get("useKeys"))
    response = override.get("response")
    return CoordinationResponse(
        action="respond",
        response=None if response is None else str(response),
        use_keys=bool(keys) if flag is None else bool(flag),
        keys=keys,
        reasoning="Human-approved (with override)",
    )


class DecisionLoop:
    """Turn session events into decisions, record them and act on them.

    Oracle failures never escape: a bad blocked-path answer becomes an
    escalation and a bad turn-complete answer becomes a completion. Errors from
    writing to or stopping the session propagate to the caller.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        terminal: SessionControl,
        oracle: Oracle,
        bus: Optional[EventBus] = None,
        *,
        max_auto_responses: int = MAX_AUTO_RESPONSES,
        supervision_level: SupervisionLevel = "autonomous",
        chat: Optional[ChatCallback] = None,
    ) -> None:
        self.registry = registry
        self.terminal = terminal
        self.oracle = oracle
        self.bus = bus
        self.max_auto_responses = max_auto_responses
        self.supervision_level: SupervisionLevel = normalize_supervision_level(supervision_level)
        self.chat = chat

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def broadcast(self, event_type: str, session_id: str, payload: dict[str, Any]) -> None:
        if self.bus is None:
            return
        try:
            self.bus.emit(channel="coordinator", event_type=event_type, entity_id=session_id, payload=payload)
        except Exception:
            logger.debug("Broadcast of %s for %s failed", event_type, session_id, exc_info=True)

    def notify_chat(self, text: str) -> None:
        if self.chat is None:
            return
        try:
            self.chat(text)
        except Exception:
            logger.debug("Chat callback failed", exc_info=True)

    def recent_output(self, session_id: str, lines: int = RECENT_OUTPUT_LINES) -> str:
        """Tail of the session's buffer, or an empty string when it cannot be read."""
        try:
            return self.terminal.get_output(session_id, lines)
        except SupervisorError:
            return ""

    # ------------------------------------------------------------------
    # Blocked prompts
    # ------------------------------------------------------------------

    def handle_blocked(self, session_id: str, ctx: TaskContext, data: Union[BlockedEvent, dict[str, Any]]) -> None:
        event = BlockedEvent.from_data(data)
        prompt_text = event.prompt_info.text
        prompt_type = event.prompt_info.type

        if event.auto_responded:
            ctx.auto_resolved_count += 1
            ctx.record(
                DecisionRecord(kind="auto_resolved", reasoning="Handled by auto-response rules", prompt_text=prompt_text)
            )
            self.broadcast(
                "blocked_auto_resolved",
                session_id,
                {"prompt": prompt_text, "prompt_type": prompt_type, "auto_resolved_count": ctx.auto_resolved_count},
            )
            count = ctx.auto_resolved_count
            # Throttled: first, second, then every fifth.
            if count <= 2 or count % 5 == 0:
                self.notify_chat(f"[{ctx.label}] Approved: {_excerpt(prompt_text, 120)}")
            return

        level = self.supervision_level
        self.broadcast(
            "blocked", session_id, {"prompt": prompt_text, "prompt_type": prompt_type, "supervision_level": level}
        )

        if ctx.auto_resolved_count >= self.max_auto_responses:
            ctx.record(
                DecisionRecord(
                    kind="escalate",
                    reasoning=f"Escalating after {self.max_auto_responses} consecutive auto-responses",
                    prompt_text=prompt_text,
                )
            )
            logger.info("Escalating %s: auto-response cap of %d reached", session_id, self.max_auto_responses)
            self.broadcast("escalation", session_id, {"prompt": prompt_text, "reason": "max_auto_responses_exceeded"})
            return

        if level == "notify":
            ctx.record(
                DecisionRecord(
                    kind="escalate", reasoning="Supervision level is notify; broadcasting only", prompt_text=prompt_text
                )
            )
            return

        if not self.registry.try_begin(session_id):
            logger.info("Skipping duplicate decision for %s (in flight)", session_id)
            return
        try:
            recent = self.recent_output(session_id)
            result = consult(self.oracle, build_coordination_prompt(ctx, prompt_text, recent))
            if level == "confirm":
                suggested = result.decision or CoordinationResponse(
                    action="escalate", reasoning="Oracle returned invalid response; needs human review"
                )
                self._queue_confirmation(session_id, ctx, prompt_text, recent, suggested)
                return
            if result.decision is None:
                ctx.record(
                    DecisionRecord(
                        kind="escalate",
                        reasoning=f"Oracle returned invalid coordination response ({result.failure}: {result.detail})",
                        prompt_text=prompt_text,
                    )
                )
                self.broadcast("escalation", session_id, {"prompt": prompt_text, "reason": "invalid_oracle_response"})
                self.notify_chat(f"[{ctx.label}] Needs your attention: could not decide how to answer {prompt_text!r}")
                return
            self._apply_blocked_decision(session_id, ctx, prompt_text, result.decision)
        finally:
            self.registry.finish(session_id)

    def _apply_blocked_decision(
        self, session_id: str, ctx: TaskContext, prompt_text: str, decision: CoordinationResponse
    ) -> None:
        ctx.record(
            DecisionRecord(
                kind=decision.action,  # type: ignore[arg-type]
                reasoning=decision.reasoning,
                prompt_text=prompt_text,
                response=decision.payload,
            )
        )
        if decision.action == "respond":
            ctx.auto_resolved_count = max(0, ctx.auto_resolved_count - 1)
        logger.info("Decision for %s: %s (%s)", session_id, decision.action, _excerpt(decision.reasoning, 120))
        self.broadcast("coordination_decision", session_id, decision.to_wire())

        if decision.action == "respond":
            if decision.use_keys:
                action = f"Sent keys: {', '.join(decision.keys)}"
            elif decision.response:
                action = f"Responded: {_excerpt(decision.response, 100)}"
            else:
                action = "Responded"
            self.notify_chat(f"[{ctx.label}] {action} ({_excerpt(decision.reasoning, 150)})")
        elif decision.action == "escalate":
            self.notify_chat(f"[{ctx.label}] Needs your attention: {decision.reasoning}")
        self.execute_decision(session_id, decision)

    def _queue_confirmation(
        self,
        session_id: str,
        ctx: TaskContext,
        prompt_text: str,
        recent: str,
        suggested: CoordinationResponse,
    ) -> None:
        self.registry.set_pending(
            PendingDecision(session_id=session_id, prompt_text=prompt_text, recent_output=recent, suggested=suggested)
        )
        self.broadcast(
            "pending_confirmation",
            session_id,
            {
                "prompt": prompt_text,
                "suggested_action": suggested.action,
                "suggested_response": suggested.payload,
                "reasoning": suggested.reasoning,
            },
        )
        self.notify_chat(f"[{ctx.label}] Waiting for your confirmation: {suggested.action} ({suggested.reasoning})")

    def confirm(
        self,
        session_id: str,
        approved: bool,
        override: Optional[Union[CoordinationResponse, dict[str, Any]]] = None,
    ) -> Optional[CoordinationResponse]:
        """Resolve a queued suggestion; returns the executed decision when approved.

        A dict override is read like oracle output: ``keys`` alone imply key
        input, and an override must carry response text or keys.

        Raises:
            NoPendingDecisionError: If nothing is queued for ``session_id``.
            ValueError: If an approved override has nothing to send. The
                suggestion stays queued.
        """
        decision = _override_decision(override) if approved and override else None
        pending = self.registry.pop_pending(session_id)
        if pending is None:
            raise NoPendingDecisionError(session_id)
        ctx = self.registry.get(session_id)

        if not approved:
            if ctx is not None:
                ctx.record(
                    DecisionRecord(
                        kind="escalate", reasoning="Human rejected the suggested action", prompt_text=pending.prompt_text
                    )
                )
            self.broadcast("confirmation_rejected", session_id, {"prompt": pending.prompt_text})
            return None

        if decision is None:
            decision = pending.suggested
        if ctx is not None:
            ctx.record(
                DecisionRecord(
                    kind=decision.action,  # type: ignore[arg-type]
                    reasoning=f"Human-approved: {decision.reasoning}",
                    prompt_text=pending.prompt_text,
                    response=decision.payload,
                )
            )
            ctx.auto_resolved_count = 0
        self.execute_decision(session_id, decision)
        self.broadcast("confirmation_approved", session_id, decision.to_wire())
        return decision

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_decision(self, session_id: str, decision: CoordinationResponse) -> None:
        """Carry out a decision against the session.

        Raises:
            UnknownSessionError: If the session was never spawned.
            InactiveSessionError: If the session's process is gone.
        """
        if decision.action == "respond":
            if decision.use_keys:
                self.terminal.send_keys(session_id, list(decision.keys))
            elif decision.response is not None:
                self.terminal.send(session_id, decision.response)
        elif decision.action == "complete":
            self._complete(session_id, decision)
        elif decision.action == "escalate":
            self.broadcast("escalation", session_id, {"reasoning": decision.reasoning})

    def _complete(self, session_id: str, decision: CoordinationResponse) -> None:
        ctx = self.registry.get(session_id)
        label = ctx.label if ctx is not None else session_id
        if ctx is not None:
            ctx.status = "completed"
        summary = extract_completion_summary(self.recent_output(session_id))
        self.broadcast("task_complete", session_id, {"reasoning": decision.reasoning, "summary": summary})
        self.notify_chat(f'Finished "{label}".\n\n{summary}' if summary else f'Finished "{label}".')
        logger.info("Task for %s completed; stopping session", session_id)
        self.terminal.stop(session_id)

    # ------------------------------------------------------------------
    # Turn completion
    # ------------------------------------------------------------------

    def handle_turn_complete(
        self, session_id: str, ctx: TaskContext, data: Union[TurnCompleteEvent, dict[str, Any]]
    ) -> None:
        if not self.registry.try_begin(session_id):
            logger.info("Skipping turn-complete assessment for %s (in flight)", session_id)
            return
        try:
            event = TurnCompleteEvent.from_data(data)
            turn_output = clean_for_display(event.response) or clean_for_display(self.recent_output(session_id))
            result = consult(self.oracle, build_turn_complete_prompt(ctx, turn_output))
            decision = result.decision
            if decision is None:
                logger.warning("Turn assessment for %s got an invalid response; defaulting to complete", session_id)
                decision = CoordinationResponse(
                    action="complete", reasoning="Oracle returned invalid response; defaulting to complete"
                )
            ctx.record(
                DecisionRecord(
                    kind=decision.action,  # type: ignore[arg-type]
                    reasoning=decision.reasoning,
                    event="turn_complete",
                    prompt_text="Agent finished a turn",
                    response=decision.payload,
                )
            )
            logger.info("Turn assessment for %s: %s", session_id, decision.action)
            self.broadcast("turn_assessment", session_id, {"action": decision.action, "reasoning": decision.reasoning})
            if decision.action == "respond":
                self.notify_chat(f"[{ctx.label}] Turn done, continuing: {_excerpt(decision.response or '', 120)}")
            elif decision.action == "escalate":
                self.notify_chat(f"[{ctx.label}] Turn finished, needs your attention: {decision.reasoning}")
            self.execute_decision(session_id, decision)
        finally:
            self.registry.finish(session_id)
