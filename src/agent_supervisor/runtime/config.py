"""YAML-backed configuration for the supervisor runtime."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from .domain.models import SupervisionLevel, normalize_supervision_level

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "supervisor.yaml"


class FileConfigRepository:
    """YAML-backed repository for runtime configuration."""
    def __init__(self, path: Path) -> None:
        """Initialize the FileConfigRepository.

        Args:
            path (Path): YAML file path for runtime configuration.
        """
        self._path = Path(path)
        self._thread_lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        """Load configuration from disk.

        Returns:
            dict[str, Any]: Configuration mapping from disk, or an empty mapping.
        """
        with self._thread_lock:
            if not self._path.exists():
                return {}
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
            return raw if isinstance(raw, dict) else {}

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        """Persist configuration to disk atomically.

        Args:
            config (dict[str, Any]): Configuration mapping to persist.

        Returns:
            dict[str, Any]: Saved configuration mapping.
        """
        with self._thread_lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(config, handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        return config


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _non_negative_float(value: Any, default: float) -> float:
    if isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


@dataclass(frozen=True)
class SupervisorSettings:
    """Tunables for the decision loop, idle watchdog and session manager.

    Attributes:
        max_auto_responses: Auto-resolved prompts tolerated before every
            further prompt is escalated without consulting the oracle.
        supervision_level: ``autonomous``, ``confirm`` or ``notify``.
        idle_threshold_seconds: Inactivity after which the watchdog checks a task.
        max_idle_checks: Idle checks before the watchdog escalates.
        idle_scan_interval_seconds: Period of the watchdog scan.
        max_log_lines: Output buffer bound per session.
        unregistered_buffer_seconds: How long events for unregistered sessions are held.
        tool_notification_interval_seconds: Minimum gap between tool-running notices.
        initial_task_settle_seconds: Delay after first output before the initial task is sent.
    """
    max_auto_responses: int = 10
    supervision_level: SupervisionLevel = "autonomous"
    idle_threshold_seconds: float = 180.0
    max_idle_checks: int = 3
    idle_scan_interval_seconds: float = 60.0
    max_log_lines: int = 1000
    unregistered_buffer_seconds: float = 2.0
    tool_notification_interval_seconds: float = 30.0
    initial_task_settle_seconds: float = 0.3

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "SupervisorSettings":
        """Build settings from the ``supervisor`` section; invalid values fall back to defaults."""
        section = _as_dict(_as_dict(config).get("supervisor"))
        defaults = cls()
        return cls(
            max_auto_responses=_positive_int(section.get("max_auto_responses"), defaults.max_auto_responses),
            supervision_level=normalize_supervision_level(section.get("supervision_level"), defaults.supervision_level),
            idle_threshold_seconds=_non_negative_float(section.get("idle_threshold_seconds"), defaults.idle_threshold_seconds),
            max_idle_checks=_positive_int(section.get("max_idle_checks"), defaults.max_idle_checks),
            idle_scan_interval_seconds=_non_negative_float(
                section.get("idle_scan_interval_seconds"), defaults.idle_scan_interval_seconds
            ),
            max_log_lines=_positive_int(section.get("max_log_lines"), defaults.max_log_lines),
            unregistered_buffer_seconds=_non_negative_float(
                section.get("unregistered_buffer_seconds"), defaults.unregistered_buffer_seconds
            ),
            tool_notification_interval_seconds=_non_negative_float(
                section.get("tool_notification_interval_seconds"), defaults.tool_notification_interval_seconds
            ),
            initial_task_settle_seconds=_non_negative_float(
                section.get("initial_task_settle_seconds"), defaults.initial_task_settle_seconds
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(path: Optional[Path] = None) -> dict[str, Any]:
    """Read the YAML config at ``path`` (or ``$AGENT_SUPERVISOR_CONFIG``, or ``./supervisor.yaml``)."""
    if path is None:
        path = Path(os.environ.get("AGENT_SUPERVISOR_CONFIG") or DEFAULT_CONFIG_FILENAME)
    config = FileConfigRepository(path).load()
    if not config:
        logger.debug("No configuration found at %s; using defaults", path)
    return config
