from __future__ import annotations

from enum import Enum
from typing import Dict, List


class StreamPhase(str, Enum):
    IDLE = "idle"
    SESSION_RESOLVED = "session_resolved"
    USER_MESSAGE_APPENDED = "user_message_appended"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({StreamPhase.COMPLETED, StreamPhase.CANCELLED, StreamPhase.FAILED})

# Send-cycle transitions; every terminal phase returns to IDLE
PHASE_TRANSITIONS: Dict[StreamPhase, List[StreamPhase]] = {
    StreamPhase.IDLE: [StreamPhase.SESSION_RESOLVED],
    StreamPhase.SESSION_RESOLVED: [StreamPhase.USER_MESSAGE_APPENDED, StreamPhase.FAILED],
    StreamPhase.USER_MESSAGE_APPENDED: [StreamPhase.STREAMING, StreamPhase.FAILED],
    StreamPhase.STREAMING: [StreamPhase.COMPLETED, StreamPhase.CANCELLED, StreamPhase.FAILED],
    StreamPhase.COMPLETED: [StreamPhase.IDLE],
    StreamPhase.CANCELLED: [StreamPhase.IDLE],
    StreamPhase.FAILED: [StreamPhase.IDLE],
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: StreamPhase, target: StreamPhase) -> None:
        super().__init__(f"Invalid stream transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def is_valid_transition(current: StreamPhase, target: StreamPhase) -> bool:
    return target in PHASE_TRANSITIONS.get(current, [])


class PhaseTracker:
    """Records the phases visited by one send cycle."""

    def __init__(self) -> None:
        self.current = StreamPhase.IDLE
        self.history: List[StreamPhase] = [StreamPhase.IDLE]

    def advance(self, target: StreamPhase) -> None:
        if not is_valid_transition(self.current, target):
            raise InvalidTransition(self.current, target)
        self.current = target
        self.history.append(target)

    @property
    def terminal(self) -> bool:
        return self.current in TERMINAL_PHASES
