"""Signaling channel contract shared by sessions and transports."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol


logger = logging.getLogger(__name__)


SERVICE_UNAVAILABLE = "service-unavailable"
CUSTOM_CLOSE_CODE_FLOOR = 4000


class SignalingStates(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"
    CLOSING = "closing"
    CLOSED = "closed"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class SignalingStateEvent:
    """Describes a signaling state transition."""

    state: SignalingStates
    reason: str | None = None
    code: int | None = None


MessageHandler = Callable[[str], None]
StateChangeHandler = Callable[[SignalingStateEvent], None]


class SignalingChannel(Protocol):
    """Ordered text channel used to negotiate a session."""

    @property
    def state(self) -> SignalingStates:
        ...

    def send(self, message: str) -> None:
        ...

    def add_message_handler(self, handler: MessageHandler) -> None:
        ...

    def remove_message_handler(self, handler: MessageHandler) -> None:
        ...

    def add_state_change_handler(self, handler: StateChangeHandler) -> None:
        ...

    def remove_state_change_handler(self, handler: StateChangeHandler) -> None:
        ...


class SignalingConnection:
    """Transport independent half of a signaling channel.

    Subclasses implement :meth:`_send` and report traffic back through
    :meth:`_handle_message`, :meth:`_handle_state_change` and
    :meth:`_handle_close`.
    """

    def __init__(self) -> None:
        self._state = SignalingStates.CLOSED
        self._message_handlers: list[MessageHandler] = []
        self._state_handlers: list[StateChangeHandler] = []

    @property
    def state(self) -> SignalingStates:
        return self._state

    # ------------------------------ handlers -------------------------------
    def add_message_handler(self, handler: MessageHandler) -> None:
        if handler not in self._message_handlers:
            self._message_handlers.append(handler)

    def remove_message_handler(self, handler: MessageHandler) -> None:
        if handler in self._message_handlers:
            self._message_handlers.remove(handler)

    def add_state_change_handler(self, handler: StateChangeHandler) -> None:
        if handler not in self._state_handlers:
            self._state_handlers.append(handler)

    def remove_state_change_handler(self, handler: StateChangeHandler) -> None:
        if handler in self._state_handlers:
            self._state_handlers.remove(handler)

    # ------------------------------ operations -----------------------------
    def send(self, message: str) -> None:
        logger.debug("Signaling send: %s", message)
        self._send(message)

    def _send(self, message: str) -> None:
        raise NotImplementedError

    # ------------------------------ transport hooks ------------------------
    def _handle_state_change(self, state: SignalingStates, *, reason: str | None = None, code: int | None = None) -> None:
        state = SignalingStates(state)
        if state == self._state:
            return
        self._state = state
        event = SignalingStateEvent(state, reason, code)
        logger.info("Signaling state changed to %s", state.value)
        for handler in list(self._state_handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Signaling state handler raised an exception")

    def _handle_close(self, code: int | None = None, reason: str | None = None) -> None:
        """Report a transport close; custom close codes are treated as errors."""

        if code is not None and code > CUSTOM_CLOSE_CODE_FLOOR:
            logger.error("Signaling error code %s: %s", code, reason)
            self._handle_state_change(SignalingStates.ERROR, reason=reason, code=code)
        else:
            self._handle_state_change(SignalingStates.CLOSED, reason=reason, code=code)

    def _handle_message(self, message: str) -> None:
        if _is_service_unavailable(message):
            self._handle_state_change(SignalingStates.UNAVAILABLE, reason=SERVICE_UNAVAILABLE)
        for handler in list(self._message_handlers):
            try:
                handler(message)
            except Exception:
                logger.exception("Signaling message handler raised an exception")


def _is_service_unavailable(message: str) -> bool:
    try:
        payload = json.loads(message)
    except (TypeError, ValueError):
        return False
    return isinstance(payload, dict) and payload.get("error") == SERVICE_UNAVAILABLE


__all__ = [
    "MessageHandler",
    "SERVICE_UNAVAILABLE",
    "SignalingChannel",
    "SignalingConnection",
    "SignalingStateEvent",
    "SignalingStates",
    "StateChangeHandler",
]
