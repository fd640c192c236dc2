"""Error taxonomy shared by the session manager and the decision loop."""

from __future__ import annotations


class SupervisorError(Exception):
    """Base class for all supervisor errors."""


class SpawnError(SupervisorError):
    """Raised when an agent process cannot be started."""


class UnknownSessionError(SupervisorError):
    """Raised when an operation references a session that was never spawned."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class InactiveSessionError(SupervisorError):
    """Raised when writing to a session whose process has already exited."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is not active")
        self.session_id = session_id


class OracleError(SupervisorError):
    """Base class for decision oracle failures."""


class OracleParseError(OracleError):
    """Raised when oracle output cannot be parsed into a coordination decision."""


class OracleTimeoutError(OracleError):
    """Raised when the oracle does not answer within its timeout."""


class NoPendingDecisionError(SupervisorError):
    """Raised when confirming a session that has no queued decision."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"No pending decision for session {session_id}")
        self.session_id = session_id
