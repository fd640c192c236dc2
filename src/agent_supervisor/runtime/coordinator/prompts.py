"""Prompt builders for oracle coordination decisions."""

from __future__ import annotations

from typing import Sequence

from ..domain.models import DecisionRecord, TaskContext

_OUTPUT_TAIL_CHARS = 3000
_HISTORY_LIMIT = 5

_RESPONSE_FORMAT = (
    "Respond with ONLY a JSON object:\n"
    '{"action": "%s", "response": "...", "useKeys": false, "keys": [], "reasoning": "..."}'
)


def _header(ctx: TaskContext, situation: str) -> list[str]:
    return [
        "You are a supervisor coordinating several interactive coding agents. "
        f'A {ctx.agent_type} coding agent ("{ctx.label}", session: {ctx.session_id}) {situation}',
        "",
        f'Original task: "{ctx.original_task}"',
        f"Working directory: {ctx.workdir}",
    ]


def format_decision_history(decisions: Sequence[DecisionRecord]) -> list[str]:
    """Render the latest decisions as numbered lines; empty when there are none."""
    recent = list(decisions)[-_HISTORY_LIMIT:]
    if not recent:
        return []
    lines = ["", "Previous decisions for this session:"]
    for idx, record in enumerate(recent, start=1):
        response = f' ("{record.response}")' if record.response else ""
        lines.append(
            f'  {idx}. [{record.event}] prompt="{record.prompt_text}" -> {record.kind}{response}: {record.reasoning}'
        )
    return lines


def _output_block(title: str, output: str) -> list[str]:
    return ["", f"{title}:", "---", (output or "")[-_OUTPUT_TAIL_CHARS:], "---", ""]


def build_coordination_prompt(ctx: TaskContext, prompt_text: str, recent_output: str) -> str:
    """Prompt for deciding how to answer a blocking prompt."""
    parts = _header(ctx, "is blocked and waiting for input.")
    parts += format_decision_history(ctx.recent_decisions(_HISTORY_LIMIT))
    parts += _output_block("Recent terminal output", recent_output)
    parts += [
        "The agent is showing this blocking prompt:",
        f'"{prompt_text}"',
        "",
        "Decide how to respond. Your options:",
        "",
        '1. "respond": send input to unblock the agent. For text prompts (Y/n, questions) set "response" '
        'to the text to send. For menus that need special keys set "useKeys": true and "keys" to the key '
        'sequence (e.g. ["enter"], ["down","enter"]).',
        "",
        '2. "complete": the original task is fulfilled and the agent is back at its idle prompt.',
        "",
        '3. "escalate": the prompt needs human judgment (design decisions, ambiguous requirements, '
        "security-sensitive actions). Do NOT respond yourself.",
        "",
        "Guidelines:",
        '- Approve tool prompts (file writes, shell commands) that serve the original task with "y" or keys ["enter"].',
        '- Answer Y/n confirmations that align with the original task with "y".',
        "- Escalate design questions and choices that could go either way.",
        "- Respond to error-recovery prompts only when the path forward is clear.",
        "- When in doubt, escalate.",
        "",
        _RESPONSE_FORMAT % "respond|complete|escalate",
    ]
    return "\n".join(parts)


def build_turn_complete_prompt(ctx: TaskContext, turn_output: str) -> str:
    """Prompt for judging whether a finished turn completes the whole task."""
    parts = _header(ctx, "just finished a turn and is back at its idle prompt.")
    parts += format_decision_history(ctx.recent_decisions(_HISTORY_LIMIT))
    parts += _output_block("Output from this turn", turn_output)
    parts += [
        "Decide whether the OVERALL task is done or more work is needed. Agents work in several turns; "
        "one finished turn does not mean the task is done.",
        "",
        "Your options:",
        "",
        '1. "respond": the task is not done yet. Set "response" to the next concise instruction '
        '(e.g. "Now run the tests", "Commit your changes and open a pull request"). This is the default.',
        "",
        '2. "complete": every objective of the original task has evidence in the output.',
        "",
        '3. "escalate": something looks wrong or you cannot tell. Let the human decide.',
        "",
        "Guidelines:",
        "- Before choosing complete, check each objective of the original task against the output.",
        "- If the agent only read or analyzed code, send a follow-up asking it to do the work.",
        "- If tests failed or errors are visible, send a follow-up to fix them.",
        "- If the working directory is a repository clone, the changes must be committed before the task is complete.",
        "",
        _RESPONSE_FORMAT % "respond|complete|escalate",
    ]
    return "\n".join(parts)


def build_idle_check_prompt(
    ctx: TaskContext,
    recent_output: str,
    idle_minutes: int,
    check_number: int,
    max_checks: int,
) -> str:
    """Prompt for assessing a session that has produced no events for a while."""
    parts = _header(ctx, f"has been idle for {idle_minutes} minutes with no events or output changes.")
    parts.append(f"Idle check: {check_number} of {max_checks} (the session is escalated after {max_checks})")
    parts += format_decision_history(ctx.recent_decisions(_HISTORY_LIMIT))
    parts += _output_block("Recent terminal output", recent_output)
    parts += [
        "The session has gone silent. Decide:",
        "",
        '1. "complete": the objectives were met and the agent is back at its idle prompt.',
        "",
        '2. "respond": the agent seems stuck or waits for input that was not detected. Send a nudge '
        '(e.g. "continue") or answer the question visible in the output.',
        "",
        '3. "escalate": something looks wrong or unclear.',
        "",
        '4. "ignore": the agent is still working (building, running tests) and will produce output soon.',
        "",
        f'On check {check_number} of {max_checks}, prefer "escalate" over "ignore" when unsure.',
        "",
        _RESPONSE_FORMAT % "respond|complete|escalate|ignore",
    ]
    return "\n".join(parts)
