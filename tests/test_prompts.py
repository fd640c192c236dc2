from __future__ import annotations

import pytest

from agent_supervisor.errors import OracleParseError
from agent_supervisor.oracle.schemas import CoordinationResponse, extract_json, parse_coordination_response
from agent_supervisor.runtime.coordinator.prompts import (
    build_coordination_prompt,
    build_idle_check_prompt,
    build_turn_complete_prompt,
    format_decision_history,
)
from agent_supervisor.runtime.domain.models import DecisionRecord, TaskContext


class TestPromptBuilders:
    def test_coordination_prompt_carries_context(self, task_ctx: TaskContext) -> None:
        prompt = build_coordination_prompt(task_ctx, "Apply this edit? (y/n)", "diff --git a/x b/x")
        assert "fix-tests" in prompt
        assert "sess-1" in prompt
        assert 'Original task: "Fix the failing unit tests"' in prompt
        assert "Working directory: /tmp/repo" in prompt
        assert '"Apply this edit? (y/n)"' in prompt
        assert "diff --git a/x b/x" in prompt
        assert prompt.rstrip().endswith('"reasoning": "..."}')
        assert "ignore" not in prompt.split("Respond with ONLY")[1]

    def test_output_is_truncated_to_tail(self, task_ctx: TaskContext) -> None:
        output = "A" * 5000 + "TAIL"
        prompt = build_turn_complete_prompt(task_ctx, output)
        assert "TAIL" in prompt
        assert "A" * 3001 not in prompt

    def test_history_lists_last_five_non_auto_decisions(self, task_ctx: TaskContext) -> None:
        for idx in range(6):
            task_ctx.record(DecisionRecord(kind="respond", reasoning=f"reason-{idx}", prompt_text="Go?", response="y"))
        task_ctx.record(DecisionRecord(kind="auto_resolved", reasoning="rule-hit"))

        prompt = build_coordination_prompt(task_ctx, "Go?", "")

        assert "Previous decisions for this session:" in prompt
        assert "reason-0" not in prompt
        assert "reason-5" in prompt
        assert "rule-hit" not in prompt

    def test_history_is_omitted_when_empty(self, task_ctx: TaskContext) -> None:
        assert format_decision_history([]) == []
        assert "Previous decisions" not in build_coordination_prompt(task_ctx, "Go?", "")

    def test_history_line_format(self) -> None:
        lines = format_decision_history(
            [DecisionRecord(kind="escalate", reasoning="unsure", event="turn_complete", prompt_text="Deploy?")]
        )
        assert lines[-1] == '  1. [turn_complete] prompt="Deploy?" -> escalate: unsure'

    def test_idle_prompt_offers_ignore(self, task_ctx: TaskContext) -> None:
        prompt = build_idle_check_prompt(task_ctx, "Building...", idle_minutes=3, check_number=2, max_checks=3)
        assert "idle for 3 minutes" in prompt
        assert "Idle check: 2 of 3" in prompt
        assert "respond|complete|escalate|ignore" in prompt


class TestParseCoordinationResponse:
    def test_plain_json(self) -> None:
        decision = parse_coordination_response('{"action": "respond", "response": "y", "reasoning": "safe"}')
        assert decision.action == "respond"
        assert decision.response == "y"
        assert decision.payload == "y"
        assert decision.reasoning == "safe"

    def test_fenced_json_with_prose(self) -> None:
        text = 'Sure.\n```json\n{"action": "complete", "reasoning": "tests pass"}\n```\nDone.'
        assert parse_coordination_response(text).action == "complete"
        assert extract_json("```\n{\"a\": 1}\n```") == {"a": 1}

    def test_keys_payload(self) -> None:
        decision = parse_coordination_response(
            '{"action": "respond", "useKeys": true, "keys": ["down", "enter"], "reasoning": "second option"}'
        )
        assert decision.use_keys is True
        assert decision.keys == ["down", "enter"]
        assert decision.payload == "keys:down,enter"

    def test_missing_reasoning_gets_default(self) -> None:
        assert parse_coordination_response('{"action": "escalate"}').reasoning == "No reasoning provided"

    def test_action_is_case_insensitive(self) -> None:
        assert parse_coordination_response('{"action": " Escalate "}').action == "escalate"

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "I think you should say yes",
            "{not json}",
            "[1, 2]",
            '{"action": "retry"}',
            '{"response": "y"}',
            '{"action": "respond"}',
            '{"action": "respond", "useKeys": true, "keys": []}',
            '{"action": "respond", "response": 5}',
        ],
    )
    def test_invalid_outputs_raise(self, text: str) -> None:
        with pytest.raises(OracleParseError):
            parse_coordination_response(text)

    def test_ignore_only_when_allowed(self) -> None:
        with pytest.raises(OracleParseError):
            parse_coordination_response('{"action": "ignore"}')
        assert parse_coordination_response('{"action": "ignore"}', allow_ignore=True).action == "ignore"

    def test_wire_round_trip_uses_aliases(self) -> None:
        decision = CoordinationResponse.model_validate({"action": "respond", "useKeys": True, "keys": ["enter"]})
        assert decision.use_keys is True
        assert decision.to_wire()["useKeys"] is True
        assert CoordinationResponse(action="escalate").payload is None
