from __future__ import annotations

from pathlib import Path

import pytest

from agent_supervisor import cli


def test_parse_args_defaults() -> None:
    args = cli.parse_args(["--task", "Fix the build"])
    assert args.task == "Fix the build"
    assert args.agent == "claude"
    assert args.workdir == Path(".")
    assert args.config is None
    assert args.supervision is None
    assert args.verbose is False


def test_parse_args_full() -> None:
    args = cli.parse_args(
        [
            "--workdir",
            "/srv/app",
            "--agent",
            "codex",
            "--task",
            "Add tests",
            "--label",
            "app-tests",
            "--config",
            "sup.yaml",
            "--oracle",
            "local",
            "--supervision",
            "confirm",
            "-v",
        ]
    )
    assert args.workdir == Path("/srv/app")
    assert args.agent == "codex"
    assert args.label == "app-tests"
    assert args.config == Path("sup.yaml")
    assert args.oracle == "local"
    assert args.supervision == "confirm"
    assert args.verbose is True


def test_parse_args_requires_task() -> None:
    with pytest.raises(SystemExit):
        cli.parse_args([])


def test_parse_args_rejects_unknown_supervision() -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(["--task", "x", "--supervision", "yolo"])


def test_main_exits_with_run_status(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []

    def fake_run(**kwargs) -> int:
        calls.append(kwargs)
        return 0

    monkeypatch.setattr(cli, "run_supervised", fake_run)
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--task", "Ship it", "--agent", "shell"])
    assert excinfo.value.code == 0
    assert calls[0]["task"] == "Ship it"
    assert calls[0]["agent_type"] == "shell"
