"""Decision-making side of the supervisor: registry, decision loop and watchdog."""

from .decision_loop import MAX_AUTO_RESPONSES, DecisionLoop
from .registry import PendingDecision, TaskRegistry
from .service import SwarmCoordinator, create_coordinator
from .watchdog import IdleWatchdog

__all__ = [
    "DecisionLoop",
    "IdleWatchdog",
    "MAX_AUTO_RESPONSES",
    "PendingDecision",
    "SwarmCoordinator",
    "TaskRegistry",
    "create_coordinator",
]
