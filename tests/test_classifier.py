from __future__ import annotations

from agent_supervisor.runtime.domain.models import BlockedEvent, ToolRunningEvent, TurnCompleteEvent
from agent_supervisor.runtime.terminal.classifier import (
    AutoResponseRule,
    RegexOutputClassifier,
    classifier_for_agent,
)


def _classify(text: str, agent_type: str = "claude"):
    return classifier_for_agent(agent_type).classify(text, text)


def test_yes_no_prompt_is_blocking() -> None:
    event = _classify("Running migrations\nDo you want to proceed? (y/n) ")
    assert isinstance(event, BlockedEvent)
    assert event.prompt_info.type == "yes_no"
    assert event.prompt_info.prompt == "Running migrations\nDo you want to proceed? (y/n)"
    assert event.auto_responded is False


def test_permission_menu_is_blocking() -> None:
    event = _classify("\x1b[1mDo you want to create foo.py?\x1b[0m\n❯ 1. Yes\n  2. No\n")
    assert isinstance(event, BlockedEvent)
    assert event.prompt_info.type == "permission"
    assert "create foo.py" in event.prompt_info.text


def test_idle_prompt_means_turn_complete() -> None:
    assert isinstance(_classify("Here is the fix.\n\x1b[2m> \x1b[0m"), TurnCompleteEvent)
    assert isinstance(_classify("Done.\n? for shortcuts"), TurnCompleteEvent)


def test_blocking_wins_over_idle_prompt() -> None:
    event = _classify("Overwrite config? [Y/n]\n> ")
    assert isinstance(event, BlockedEvent)


def test_tool_activity_is_reported_from_chunk() -> None:
    event = _classify("Starting dev server on port 3000")
    assert isinstance(event, ToolRunningEvent)
    assert event.tool_name == "dev_server"
    assert event.description == "Starting dev server"

    event = _classify("Calling MCP tool: browser_navigate")
    assert isinstance(event, ToolRunningEvent)
    assert event.description == "browser_navigate"


def test_plain_output_is_not_classified() -> None:
    assert _classify("compiling 42 modules") is None
    assert _classify("") is None


def test_shell_prompt_is_idle_only_for_shell_sessions() -> None:
    text = "ls\nfile.txt\nuser@host:~$ "
    assert isinstance(_classify(text, "shell"), TurnCompleteEvent)
    assert _classify(text, "claude") is None


def test_only_tail_lines_are_inspected() -> None:
    classifier = RegexOutputClassifier(tail_lines=2)
    text = "Continue? (y/n)\nyes\nstill working\nalmost there"
    assert classifier.classify(text, text) is None


def test_custom_patterns_replace_defaults() -> None:
    classifier = RegexOutputClassifier(blocking_patterns=(("deploy", r"Deploy to production\?$"),), idle_patterns=())
    event = classifier.classify("Deploy to production?", "Deploy to production?")
    assert isinstance(event, BlockedEvent)
    assert event.prompt_info.type == "deploy"
    assert classifier.classify("> ", "> ") is None


def test_auto_response_rule_matching_is_case_insensitive() -> None:
    rule = AutoResponseRule(pattern=r"trust this folder", keys=("enter",))
    assert rule.matches("Do you TRUST this folder?")
    assert not rule.matches("Delete everything?")
