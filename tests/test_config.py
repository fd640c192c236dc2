from __future__ import annotations

from pathlib import Path

import pytest

from agent_supervisor.oracle.config import get_oracle_runtime_config, resolve_oracle_provider
from agent_supervisor.runtime.config import FileConfigRepository, SupervisorSettings, load_config


def test_repository_round_trips_yaml(tmp_path: Path) -> None:
    repo = FileConfigRepository(tmp_path / "nested" / "supervisor.yaml")
    assert repo.load() == {}

    config = {"supervisor": {"max_auto_responses": 5}, "oracle": {"default": "claude"}}
    repo.save(config)

    assert repo.path.exists()
    assert not repo.path.with_suffix(".yaml.tmp").exists()
    assert repo.load() == config


def test_repository_ignores_non_mapping_documents(tmp_path: Path) -> None:
    path = tmp_path / "supervisor.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    assert FileConfigRepository(path).load() == {}


def test_settings_defaults() -> None:
    settings = SupervisorSettings.from_config({})
    assert settings == SupervisorSettings()
    assert settings.max_auto_responses == 10
    assert settings.supervision_level == "autonomous"
    assert settings.max_log_lines == 1000


def test_settings_read_supervisor_section() -> None:
    settings = SupervisorSettings.from_config(
        {
            "supervisor": {
                "max_auto_responses": "4",
                "supervision_level": "CONFIRM",
                "idle_threshold_seconds": 90,
                "max_idle_checks": 5,
                "tool_notification_interval_seconds": 0,
            }
        }
    )
    assert settings.max_auto_responses == 4
    assert settings.supervision_level == "confirm"
    assert settings.idle_threshold_seconds == 90.0
    assert settings.max_idle_checks == 5
    assert settings.tool_notification_interval_seconds == 0.0


@pytest.mark.parametrize(
    "section",
    [
        {"max_auto_responses": 0},
        {"max_auto_responses": -3},
        {"max_auto_responses": "many"},
        {"max_auto_responses": True},
        {"supervision_level": "yolo"},
        {"idle_threshold_seconds": -1},
    ],
)
def test_invalid_settings_fall_back_to_defaults(section: dict) -> None:
    assert SupervisorSettings.from_config({"supervisor": section}) == SupervisorSettings()


def test_load_config_uses_environment_variable(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "custom.yaml"
    FileConfigRepository(path).save({"supervisor": {"max_idle_checks": 7}})
    monkeypatch.setenv("AGENT_SUPERVISOR_CONFIG", str(path))
    assert load_config()["supervisor"]["max_idle_checks"] == 7


def test_load_config_missing_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AGENT_SUPERVISOR_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    assert load_config() == {}


class TestOracleConfig:
    def test_builtin_claude_provider(self) -> None:
        runtime = get_oracle_runtime_config({})
        assert runtime.default_provider == "claude"
        spec = resolve_oracle_provider(runtime)
        assert spec.type == "claude"
        assert spec.command == "claude -p"
        assert spec.timeout_seconds == 120.0

    def test_custom_providers(self) -> None:
        runtime = get_oracle_runtime_config(
            {
                "oracle": {
                    "default": "fast",
                    "providers": {
                        "fast": {"type": "local", "endpoint": "http://localhost:11434", "model": "qwen2.5", "temperature": 0},
                        "codex": {"model": "gpt-5", "timeout_seconds": 30},
                        "broken": {"type": "mystery"},
                    },
                }
            }
        )
        fast = resolve_oracle_provider(runtime)
        assert fast.type == "ollama"
        assert fast.temperature == 0.0
        codex = resolve_oracle_provider(runtime, "codex")
        assert codex.command == "codex exec -"
        assert codex.model == "gpt-5"
        assert codex.timeout_seconds == 30.0
        assert "broken" not in runtime.providers

    def test_unknown_provider_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown oracle provider"):
            resolve_oracle_provider(get_oracle_runtime_config({}), "gpt")

    def test_ollama_requires_endpoint_and_model(self) -> None:
        runtime = get_oracle_runtime_config({"oracle": {"providers": {"local": {"type": "ollama", "model": "x"}}}})
        with pytest.raises(ValueError, match="endpoint"):
            resolve_oracle_provider(runtime, "local")
