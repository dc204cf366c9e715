"""Public session object tying negotiation, commands and streams together."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from typing import Any, Callable

from .commands import COMMAND_CHANNEL_LABEL, INPUT_CHANNEL_LABEL, CommandController
from .config import SessionConfig, SessionParams, StunTurnConfig
from .negotiation import NegotiationEngine
from .signaling import SignalingChannel
from .states import (
    ALREADY_CLOSED_MESSAGE,
    ALREADY_OPEN_MESSAGE,
    CONNECTED_STATES,
    SessionError,
    SessionStates,
    SessionTimeoutError,
    StateChangeEvent,
)
from .stats import StatsObserver
from .streams import VIDEO_READY, MediaStream, StreamController


logger = logging.getLogger(__name__)


StateChangeHandler = Callable[[StateChangeEvent], None]


class Session:
    """A reusable connection to a mixing server.

    ``open`` and ``close`` complete when the session reaches the matching
    state. Every transition goes through :meth:`_handle_state_change`, which
    also settles whichever of those calls is outstanding.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        peer_connection_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._config = config or SessionConfig()
        self._session_id = str(uuid.uuid4())
        self._state = SessionStates.CLOSED
        self._state_handlers: list[StateChangeHandler] = []
        self._command_controller = CommandController(interval=self._config.command_queue_interval)
        self._stream_controller = StreamController(self._command_controller)
        self._engine = NegotiationEngine(
            self,
            ice_defaults=self._config.ice_defaults,
            peer_connection_factory=peer_connection_factory,
            stats_interval=self._config.stats_interval,
        )
        self._stream_controller.set_input_audio_change_handler(self._engine.add_audio_input_stream)
        self._stream_controller.set_input_video_change_handler(self._engine.add_video_input_stream)
        self._pending_open: asyncio.Future[SessionStates] | None = None
        self._pending_close: asyncio.Future[SessionStates] | None = None
        self._close_after_fail: asyncio.Task[None] | None = None

    # ------------------------------ properties -----------------------------
    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> SessionStates:
        return self._state

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def command_controller(self) -> CommandController:
        return self._command_controller

    @property
    def stream_controller(self) -> StreamController:
        return self._stream_controller

    @property
    def negotiation(self) -> NegotiationEngine:
        return self._engine

    # ------------------------------ observers ------------------------------
    def add_state_change_handler(self, handler: StateChangeHandler) -> None:
        if handler not in self._state_handlers:
            self._state_handlers.append(handler)

    def remove_state_change_handler(self, handler: StateChangeHandler) -> None:
        if handler in self._state_handlers:
            self._state_handlers.remove(handler)

    def add_stats_observer(self, observer: StatsObserver) -> None:
        self._engine.add_stats_observer(observer)

    def remove_stats_observer(self, observer: StatsObserver) -> None:
        self._engine.remove_stats_observer(observer)

    # ------------------------------ operations -----------------------------
    async def open(
        self,
        signaling: SignalingChannel,
        timeout: float | None = None,
        params: SessionParams | None = None,
        custom_stun_turn: StunTurnConfig | None = None,
    ) -> SessionStates | str:
        """Open the session over ``signaling``.

        Returns the connected state, or an informational message when the
        session is already open. Raises :class:`SessionError` when the attempt
        fails or is closed, and :class:`SessionTimeoutError` after ``timeout``
        seconds.
        """

        if self._state in CONNECTED_STATES:
            logger.info(ALREADY_OPEN_MESSAGE)
            return ALREADY_OPEN_MESSAGE
        limit = self._config.open_timeout if timeout is None else float(timeout)
        if limit <= 0:
            raise ValueError("timeout must be positive")
        if params is None:
            params = self._config.params
        if custom_stun_turn is None:
            custom_stun_turn = self._config.stun_turn

        self._engine.assign_signaling(signaling)
        loop = asyncio.get_running_loop()
        previous = self._pending_open
        if previous is not None and not previous.done():
            previous.set_exception(SessionError("superseded by a newer open request", state=self._state))
        future: asyncio.Future[SessionStates] = loop.create_future()
        self._pending_open = future

        logger.info("Opening session %s", self._session_id)
        self._handle_state_change(StateChangeEvent(SessionStates.NEW), SessionStates.NEW)
        self._engine.open(params, custom_stun_turn)
        try:
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.TimeoutError:
            message = f"open timed out after {limit * 1000:.0f} ms"
            logger.warning(message)
            if self._pending_open is future:
                self._pending_open = None
            await self.close()
            raise SessionTimeoutError(message, state=SessionStates.FAILED) from None

    async def close(self) -> SessionStates | str:
        """Close the session and wait until it reports ``closed``."""

        if self._state is SessionStates.CLOSED:
            logger.info(ALREADY_CLOSED_MESSAGE)
            return ALREADY_CLOSED_MESSAGE
        await self._stream_controller.stop()
        self._command_controller.stop_monitoring_queues()
        future = self._pending_close
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._pending_close = future
        logger.info("Closing session %s", self._session_id)
        await self._engine.close()
        return await future

    # ------------------------------ state machine --------------------------
    def _handle_state_change(self, event: StateChangeEvent | None, state: SessionStates | str) -> None:
        state = SessionStates(state)
        event = StateChangeEvent(state) if event is None else replace(event, state=state)
        self._settle_pending(event)
        if state is self._state:
            return
        self._state = state
        logger.info("Session %s state changed to %s", self._session_id, state.value)
        for handler in list(self._state_handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Session state handler raised an exception")

    def _settle_pending(self, event: StateChangeEvent) -> None:
        state = event.state
        message = event.reason or state.value
        if state in CONNECTED_STATES:
            self._resolve_open(state)
            self._reject_close(SessionError(message, state=state))
        elif state is SessionStates.DISCONNECTED:
            logger.debug("Session disconnected; it may recover, leaving pending calls open")
        elif state is SessionStates.FAILED:
            self._reject_open(SessionError(message, state=state))
            self._reject_close(SessionError(message, state=state))
            self._schedule_close_after_fail()
        elif state is SessionStates.CLOSED:
            self._reject_open(SessionError(message, state=state))
            self._resolve_close(state)

    def _schedule_close_after_fail(self) -> None:
        # failed is not closed: the engine may still hold the signaling channel
        task = self._close_after_fail
        if task is not None and not task.done():
            return
        self._close_after_fail = self._engine.request_close()

    def _resolve_open(self, state: SessionStates) -> None:
        future, self._pending_open = self._pending_open, None
        if future is not None and not future.done():
            future.set_result(state)

    def _reject_open(self, error: SessionError) -> None:
        future, self._pending_open = self._pending_open, None
        if future is not None and not future.done():
            future.set_exception(error)

    def _resolve_close(self, state: SessionStates) -> None:
        future, self._pending_close = self._pending_close, None
        if future is not None and not future.done():
            future.set_result(state)

    def _reject_close(self, error: SessionError) -> None:
        future, self._pending_close = self._pending_close, None
        if future is not None and not future.done():
            future.set_exception(error)

    # ------------------------------ peer events ----------------------------
    def _on_data_channel(self, channel: Any) -> None:
        label = getattr(channel, "label", None)
        if label == INPUT_CHANNEL_LABEL:
            self._command_controller.set_input_channel(channel)
        elif label == COMMAND_CHANNEL_LABEL:
            self._command_controller.set_command_channel(channel)
        else:
            logger.info("Ignoring unknown data channel %r", label)

    async def _on_track(self, track: Any) -> None:
        kind = getattr(track, "kind", None)
        logger.info("Received remote %s track", kind)
        if kind == "video":
            await self._stream_controller._set_video_stream(MediaStream([track]))
            self._stream_controller._notify_video_state(VIDEO_READY)
        elif kind == "audio":
            await self._stream_controller._set_audio_stream(MediaStream([track]))

    def __repr__(self) -> str:
        return f"Session(id={self._session_id!r}, state={self._state.value!r})"


__all__ = ["Session"]
