"""Session states, state change events and session errors."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


ALREADY_OPEN_MESSAGE = (
    "There is already an open session. To reconnect, first close the existing "
    "connection, and then attempt to open again."
)
ALREADY_CLOSED_MESSAGE = "Session is already closed."


class SessionStates(str, Enum):
    """Session states, named after the ICE connection states that drive them."""

    NEW = "new"
    CONNECTING = "checking"
    CONNECTED = "connected"
    COMPLETED = "completed"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @classmethod
    def from_ice_state(cls, value: str) -> "SessionStates | None":
        try:
            return cls(value)
        except ValueError:
            return None


CONNECTED_STATES = frozenset({SessionStates.CONNECTED, SessionStates.COMPLETED})


@dataclass(frozen=True, slots=True)
class StateChangeEvent:
    """Passed to state change handlers; ``reason`` explains failures."""

    state: SessionStates
    reason: str | None = None


class SessionError(RuntimeError):
    """Raised when a pending open or close does not complete."""

    def __init__(self, message: str, *, state: SessionStates | None = None) -> None:
        super().__init__(message)
        self.state = state


class SessionTimeoutError(SessionError):
    """Raised when opening a session takes longer than its timeout."""


__all__ = [
    "ALREADY_CLOSED_MESSAGE",
    "ALREADY_OPEN_MESSAGE",
    "CONNECTED_STATES",
    "SessionError",
    "SessionStates",
    "SessionTimeoutError",
    "StateChangeEvent",
]
