"""
Agent Supervisor
================

Run one interactive coding agent under supervision: blocking prompts are
answered through the configured oracle, finished turns are assessed, and the
session is stopped once the task is judged complete.

Usage:
  agent-supervisor --workdir ./repo --agent claude --task "Fix the failing tests"

Optional:
  --config supervisor.yaml            # YAML with supervisor/oracle sections
  --oracle ollama                     # provider name from the config
  --supervision notify                # autonomous | confirm | notify
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path
from typing import Optional, Sequence

from .runtime.config import SupervisorSettings, load_config
from .runtime.coordinator import create_coordinator
from .runtime.terminal import SpawnOptions, TerminalService

_TERMINAL_STATUSES = {"completed", "stopped", "failed"}


def run_supervised(
    *,
    workdir: Path,
    agent_type: str,
    task: str,
    label: Optional[str] = None,
    config_path: Optional[Path] = None,
    oracle_provider: Optional[str] = None,
    supervision_level: Optional[str] = None,
    poll_seconds: float = 1.0,
) -> int:
    """Spawn an agent, supervise it until its session ends, and return an exit code."""
    config = load_config(config_path)
    settings = SupervisorSettings.from_config(config)
    terminal = TerminalService(
        max_log_lines=settings.max_log_lines,
        initial_task_settle_seconds=settings.initial_task_settle_seconds,
    )
    coordinator = create_coordinator(config, terminal=terminal, oracle_provider=oracle_provider)
    coordinator.set_chat_callback(lambda text: print(f"\n{text}"))
    if supervision_level:
        coordinator.set_supervision_level(supervision_level)

    print("\n" + "=" * 70)
    print("  AGENT SUPERVISOR")
    print("=" * 70)
    print(f"\nWorking directory: {workdir}")
    print(f"Agent: {agent_type}")
    print(f"Supervision: {coordinator.get_supervision_level()}")

    coordinator.start()
    session_id = terminal.spawn(
        SpawnOptions(agent_type=agent_type, workdir=str(workdir), label=label or agent_type, initial_task=task)
    )
    ctx = coordinator.register_task(
        session_id, agent_type=agent_type, label=label or agent_type, original_task=task, workdir=str(workdir)
    )
    print(f"Session: {session_id}\n")

    try:
        while True:
            session = terminal.get_session(session_id)
            if session is None or session.status in _TERMINAL_STATUSES:
                break
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        print("\nInterrupted; stopping session")
        terminal.stop(session_id)
    finally:
        coordinator.stop()
        terminal.shutdown()

    session = terminal.get_session(session_id)
    status = session.status if session else "unknown"
    print(f"\nSession {session_id} finished with status {status} (task: {ctx.status})")
    return 0 if ctx.status == "completed" or status == "completed" else 1


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Agent Supervisor - run an interactive coding agent under autonomous supervision",
    )
    parser.add_argument(
        "--workdir",
        type=Path,
        default=Path("."),
        help="Working directory for the agent (default: current directory)",
    )
    parser.add_argument(
        "--agent",
        type=str,
        default="claude",
        help="Agent CLI to run: claude, codex, gemini, aider or shell (default: claude)",
    )
    parser.add_argument(
        "--task",
        type=str,
        required=True,
        help="Instruction sent to the agent once it is ready",
    )
    parser.add_argument("--label", type=str, default=None, help="Human-readable session label")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config file (default: $AGENT_SUPERVISOR_CONFIG or ./supervisor.yaml)",
    )
    parser.add_argument("--oracle", type=str, default=None, help="Oracle provider name from the config")
    parser.add_argument(
        "--supervision",
        choices=["autonomous", "confirm", "notify"],
        default=None,
        help="Override the configured supervision level",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(
        run_supervised(
            workdir=args.workdir,
            agent_type=args.agent,
            task=args.task,
            label=args.label,
            config_path=args.config,
            oracle_provider=args.oracle,
            supervision_level=args.supervision,
        )
    )


if __name__ == "__main__":
    main()
