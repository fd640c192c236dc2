from __future__ import annotations

import json
import time

import pytest

from agent_supervisor.runtime.coordinator.decision_loop import DecisionLoop
from agent_supervisor.runtime.coordinator.registry import TaskRegistry
from agent_supervisor.runtime.coordinator.watchdog import IdleWatchdog
from agent_supervisor.runtime.domain.models import TaskContext

from conftest import FakeOracle, FakeTerminal

IGNORE = json.dumps({"action": "ignore", "reasoning": "still compiling"})


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock(10_000.0)


@pytest.fixture
def ctx(task_ctx: TaskContext, clock: _Clock) -> TaskContext:
    task_ctx.last_activity_at = clock.now
    return task_ctx


def _watchdog(ctx, terminal, oracle, bus, clock, chat=None, **kwargs) -> IdleWatchdog:
    registry = TaskRegistry()
    registry.register(ctx.session_id, ctx)
    loop = DecisionLoop(registry, terminal, oracle, bus, chat=chat.append if chat is not None else None)
    kwargs.setdefault("idle_threshold_seconds", 180)
    kwargs.setdefault("max_idle_checks", 3)
    return IdleWatchdog(loop, clock=clock, **kwargs)


def test_recent_activity_is_not_checked(ctx, terminal, bus, clock) -> None:
    oracle = FakeOracle()
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock)
    clock.now += 100
    assert watchdog.scan_once() == 0
    assert oracle.calls == 0


def test_idle_task_is_checked_with_ignore_allowed(ctx, terminal, bus, events, clock) -> None:
    oracle = FakeOracle(IGNORE)
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock)
    clock.now += 240

    assert watchdog.scan_once() == 1

    assert oracle.calls == 1
    assert "idle for 4 minutes" in oracle.prompts[0]
    assert "Idle check: 1 of 3" in oracle.prompts[0]
    record = ctx.decisions[-1]
    assert (record.kind, record.event) == ("ignore", "idle_watchdog")
    assert events[-1]["type"] == "idle_check_decision"
    assert events[-1]["payload"]["idle_check_number"] == 1
    assert terminal.sent == []
    assert not watchdog._registry.is_in_flight(ctx.session_id)


def test_respond_nudges_the_agent(ctx, terminal, bus, clock) -> None:
    chat: list[str] = []
    oracle = FakeOracle(json.dumps({"action": "respond", "response": "continue", "reasoning": "stalled"}))
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock, chat=chat)
    clock.now += 200

    watchdog.scan_once()

    assert terminal.sent == [("sess-1", "continue")]
    assert chat == ["[fix-tests] Idle for 3m: Nudged: continue"]


def test_escalates_after_max_checks_without_oracle(ctx, terminal, bus, events, clock) -> None:
    chat: list[str] = []
    oracle = FakeOracle(IGNORE, IGNORE, IGNORE)
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock, chat=chat, max_idle_checks=2)
    clock.now += 200

    watchdog.scan_once()
    watchdog.scan_once()
    assert oracle.calls == 2

    watchdog.scan_once()

    assert oracle.calls == 2
    assert ctx.idle_check_count == 3
    record = ctx.decisions[-1]
    assert record.kind == "escalate"
    assert "2 idle checks" in record.reasoning
    assert events[-1]["payload"]["reason"] == "idle_watchdog_max_checks"
    assert "Needs your attention" in chat[-1]


def test_fresh_output_resets_idle_state(ctx, terminal, bus, clock) -> None:
    oracle = FakeOracle(IGNORE)
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock)
    clock.now += 200
    watchdog.scan_once()
    assert ctx.idle_check_count == 1

    terminal.output += "Compiled 10 modules\n"
    clock.now += 60

    assert watchdog.scan_once() == 0
    assert ctx.idle_check_count == 0
    assert ctx.last_activity_at == clock.now
    assert oracle.calls == 1


def test_skips_in_flight_and_finished_tasks(ctx, terminal, bus, clock) -> None:
    oracle = FakeOracle()
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock)
    clock.now += 500

    watchdog._registry.try_begin(ctx.session_id)
    assert watchdog.scan_once() == 0
    watchdog._registry.finish(ctx.session_id)

    ctx.status = "completed"
    assert watchdog.scan_once() == 0
    assert oracle.calls == 0


def test_idle_state_is_untouched_while_a_decision_is_in_flight(ctx, terminal, bus, clock) -> None:
    oracle = FakeOracle()
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock)
    clock.now += 500
    activity = ctx.last_activity_at

    assert watchdog._registry.try_begin(ctx.session_id)
    watchdog.scan_once()
    watchdog.scan_once()

    assert ctx.idle_check_count == 0
    assert ctx.last_activity_at == activity
    assert ctx.session_id not in watchdog._registry.last_seen_output
    assert watchdog._registry.is_in_flight(ctx.session_id)


def test_idle_check_holds_the_in_flight_guard(ctx, terminal, bus, clock) -> None:
    seen: list[bool] = []

    class _GuardedOracle(FakeOracle):
        def complete(self, prompt: str) -> str:
            seen.append(watchdog._registry.is_in_flight(ctx.session_id))
            return super().complete(prompt)

    watchdog = _watchdog(ctx, terminal, _GuardedOracle(IGNORE), bus, clock)
    clock.now += 200

    assert watchdog.scan_once() == 1

    assert seen == [True]
    assert ctx.idle_check_count == 1
    assert not watchdog._registry.is_in_flight(ctx.session_id)


def test_invalid_oracle_answer_only_notifies(ctx, terminal, bus, clock) -> None:
    chat: list[str] = []
    oracle = FakeOracle("no idea")
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock, chat=chat)
    clock.now += 200

    watchdog.scan_once()

    assert ctx.decisions == []
    assert "couldn't determine status" in chat[-1]


def test_session_write_failures_do_not_stop_the_scan(ctx, bus, clock) -> None:
    terminal = FakeTerminal(output="waiting")
    terminal.inactive.add(ctx.session_id)
    oracle = FakeOracle(json.dumps({"action": "respond", "response": "continue"}))
    watchdog = _watchdog(ctx, terminal, oracle, bus, clock)
    clock.now += 200

    assert watchdog.scan_once() == 1
    assert not watchdog._registry.is_in_flight(ctx.session_id)


def test_background_worker_scans_until_shutdown(ctx, terminal, bus) -> None:
    ctx.last_activity_at = time.time() - 1000
    oracle = FakeOracle(IGNORE)
    registry = TaskRegistry()
    registry.register(ctx.session_id, ctx)
    watchdog = IdleWatchdog(
        DecisionLoop(registry, terminal, oracle, bus),
        idle_threshold_seconds=1,
        scan_interval_seconds=0.01,
    )
    watchdog.ensure_worker()
    watchdog.ensure_worker()
    try:
        deadline = time.monotonic() + 5
        while oracle.calls == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        watchdog.shutdown()
    assert oracle.calls >= 1
    assert watchdog._thread is None
