"""Command queueing and dispatch over the session data channels."""
from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Protocol, Union

from .input_codec import KeyboardState, PointerState


logger = logging.getLogger(__name__)


DEFAULT_COMMAND_QUEUE_INTERVAL = 1.0

INPUT_CHANNEL_LABEL = "ravi.input"
COMMAND_CHANNEL_LABEL = "ravi.command"


class DataChannel(Protocol):
    """Subset of :class:`aiortc.RTCDataChannel` used by the controller."""

    label: str
    readyState: str

    def send(self, data: str | bytes) -> None:
        ...

    def on(self, event: str, f: Callable[..., Any] | None = None) -> Any:
        ...


@dataclass(frozen=True, slots=True)
class JsonCommand:
    """A named command whose parameters travel as JSON."""

    name: str
    params: Any = None

    def encode(self) -> str:
        return json.dumps({"c": self.name, "p": self.params})


@dataclass(frozen=True, slots=True)
class BinaryCommand:
    """An untyped binary payload on the command channel."""

    payload: bytes


Command = Union[JsonCommand, BinaryCommand]
CommandHandler = Callable[[Any], None]


class ListenerState(str, Enum):
    ARMED = "armed"
    FIRED = "fired"


@dataclass(eq=False, slots=True)
class Listener:
    """A handler subscribed to replies or messages for a single command."""

    handler: CommandHandler
    sticky: bool = False
    awaits_reply: bool = False
    state: ListenerState = ListenerState.ARMED

    @property
    def armed(self) -> bool:
        return self.state is ListenerState.ARMED

    def fire(self, payload: Any) -> None:
        if not self.armed:
            return
        if not self.sticky:
            self.state = ListenerState.FIRED
        try:
            self.handler(payload)
        except Exception:
            logger.exception("Command handler raised an exception")


@dataclass(eq=False, slots=True)
class _QueuedCommand:
    command: Command
    reply: Listener | None = None


@dataclass(slots=True)
class CommandEntry:
    """Outbound queue and listeners for one command name."""

    outbound: Deque[_QueuedCommand] = field(default_factory=deque)
    replies: Deque[Listener] = field(default_factory=deque)
    listeners: list[Listener] = field(default_factory=list)

    def dispatch(self, payload: Any) -> int:
        """Deliver ``payload`` and return the number of handlers invoked."""

        if self.replies:
            self.replies.popleft().fire(payload)
            return 1
        fired = 0
        for listener in list(self.listeners):
            listener.fire(payload)
            fired += 1
        self.listeners = [listener for listener in self.listeners if listener.armed]
        return fired


class CommandController:
    """Queue commands for the command channel and route inbound replies.

    Named JSON commands are held in a FIFO per name and drained by a periodic
    pump which sends at most one instance of each name per tick. Raw binary
    commands share a single queue of their own. Pointer and keyboard input is
    not queued; it goes straight out over the input channel.
    """

    def __init__(self, *, interval: float = DEFAULT_COMMAND_QUEUE_INTERVAL) -> None:
        self._interval = self._validate_interval(interval)
        self._entries: dict[str, CommandEntry] = {}
        self._binary = CommandEntry()
        self._input_channel: DataChannel | None = None
        self._command_channel: DataChannel | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._pointer = PointerState()
        self._keyboard = KeyboardState()

    # ------------------------------ properties -----------------------------
    @property
    def command_queue_interval(self) -> float:
        return self._interval

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None

    @property
    def input_channel(self) -> DataChannel | None:
        return self._input_channel

    @property
    def command_channel(self) -> DataChannel | None:
        return self._command_channel

    @property
    def pointer(self) -> PointerState:
        return self._pointer

    @property
    def keyboard(self) -> KeyboardState:
        return self._keyboard

    def pending_count(self, name: str | None = None) -> int:
        """Return the number of commands still waiting to be sent."""

        if name is not None:
            entry = self._entries.get(name)
            return len(entry.outbound) if entry is not None else 0
        total = len(self._binary.outbound)
        for entry in self._entries.values():
            total += len(entry.outbound)
        return total

    # ------------------------------ queueing -------------------------------
    def queue_command(
        self,
        name: str,
        params: Any = None,
        handler: CommandHandler | None = None,
    ) -> None:
        """Queue a JSON command; ``handler`` receives the reply to this instance."""

        if not isinstance(name, str) or not name:
            raise ValueError("Command name must be a non-empty string")
        reply = None
        if handler is not None:
            reply = Listener(handler, sticky=False, awaits_reply=True)
        self._entry(name).outbound.append(_QueuedCommand(JsonCommand(name, params), reply))
        logger.debug("Queued command %s", name)

    def queue_binary_command(self, payload: bytes | bytearray | memoryview) -> None:
        self._binary.outbound.append(_QueuedCommand(BinaryCommand(bytes(payload))))
        logger.debug("Queued binary command (%d bytes)", len(payload))

    def add_message_handler(self, name: str, handler: CommandHandler, sticky: bool = False) -> Listener:
        """Subscribe to messages named ``name`` without sending anything."""

        listener = Listener(handler, sticky=sticky)
        self._entry(name).listeners.append(listener)
        return listener

    def add_binary_handler(self, handler: CommandHandler, sticky: bool = False) -> Listener:
        listener = Listener(handler, sticky=sticky)
        self._binary.listeners.append(listener)
        return listener

    # ------------------------------ queue pump -----------------------------
    def set_command_queue_interval(self, interval: float) -> None:
        """Change the pump interval, restarting the pump when it is running."""

        self._interval = self._validate_interval(interval)
        if self._task is not None:
            self.stop_monitoring_queues()
            self.monitor_queues()

    def monitor_queues(self) -> None:
        if self._task is not None:
            return
        logger.debug("Begin monitoring command queues every %.3fs", self._interval)
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run(self._stop_event))

    def stop_monitoring_queues(self) -> None:
        task = self._task
        if task is None:
            return
        logger.debug("Stop monitoring command queues")
        assert self._stop_event is not None
        self._stop_event.set()
        task.cancel()
        self._task = None
        self._stop_event = None

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                self.process_queued_commands()

    def process_queued_commands(self) -> int:
        """Send the head of every non-empty queue and return the number sent."""

        sent = 0
        for entry in [*self._entries.values(), self._binary]:
            if not entry.outbound:
                continue
            queued = entry.outbound.popleft()
            if queued.reply is not None:
                entry.replies.append(queued.reply)
            if self._send_command(queued.command):
                sent += 1
            else:
                logger.warning("Command send failed; the command channel may be closed. Not retrying.")
        return sent

    def _send_command(self, command: Command) -> bool:
        channel = self._command_channel
        if channel is None or channel.readyState != "open":
            return False
        if isinstance(command, JsonCommand):
            message: str | bytes = command.encode()
            logger.debug("Sending command %s", message)
        else:
            message = command.payload
            logger.debug("Sending binary command (%d bytes)", len(message))
        try:
            channel.send(message)
        except Exception as exc:
            logger.error("Error while sending command: %s", exc)
            return False
        return True

    # ------------------------------ dispatch -------------------------------
    def handle_message(self, data: str | bytes | bytearray | memoryview) -> None:
        """Route a frame received on the command channel to its listeners."""

        command = self.decode_message(data)
        if command is None:
            return
        if isinstance(command, BinaryCommand):
            self._binary.dispatch(command.payload)
            return
        entry = self._entries.get(command.name)
        if entry is None:
            logger.debug("No listeners for command %s", command.name)
            return
        entry.dispatch(command.params)

    @staticmethod
    def decode_message(data: str | bytes | bytearray | memoryview) -> Command | None:
        if isinstance(data, (bytes, bytearray, memoryview)):
            return BinaryCommand(bytes(data))
        if not isinstance(data, str):
            logger.warning("Ignoring command frame of unsupported type %s", type(data).__name__)
            return None
        try:
            message = json.loads(data)
        except ValueError as exc:
            logger.warning("Could not parse command message (%s): %r", exc, data)
            return None
        if not isinstance(message, dict):
            logger.warning("Command message is not an object: %r", data)
            return None
        name = message.get("c")
        if not isinstance(name, str) or not name or message.get("p") is None:
            logger.warning("Command message is missing its name or payload: %r", data)
            return None
        return JsonCommand(name, message["p"])

    # ------------------------------ input ----------------------------------
    def send_input(self, frame: str | bytes) -> bool:
        """Send ``frame`` on the input channel when it is open."""

        channel = self._input_channel
        if channel is None or channel.readyState != "open":
            return False
        try:
            channel.send(frame)
        except Exception as exc:
            logger.error("Error while sending input: %s", exc)
            return False
        return True

    def pointer_move(self, x: float, y: float, width: float, height: float, buttons: int = 0) -> bool:
        return self.send_input(self._pointer.move(x, y, width, height, buttons))

    def pointer_down(self, x: float, y: float, buttons: int) -> bool:
        return self.send_input(self._pointer.press(x, y, buttons))

    def pointer_up(self, buttons: int = 0) -> bool:
        return self.send_input(self._pointer.release(buttons))

    def pointer_wheel(self, delta: float) -> bool:
        return self.send_input(self._pointer.wheel(delta))

    def key_down(self, key: str) -> bool:
        """Mark ``key`` as held; a frame is sent only when it was not already held."""

        if not self._keyboard.press(key):
            return False
        return self.send_input(self._keyboard.pack())

    def key_up(self, key: str) -> bool:
        if not self._keyboard.release(key):
            return False
        return self.send_input(self._keyboard.pack())

    # ------------------------------ channels -------------------------------
    def set_input_channel(self, channel: DataChannel) -> None:
        self._input_channel = channel
        logger.debug("Received input data channel %s", channel.label)

        @channel.on("open")
        def _on_open() -> None:
            logger.debug("Input data channel open")

        @channel.on("close")
        def _on_close() -> None:
            logger.debug("Input data channel closed")

        @channel.on("message")
        def _on_message(message: Any) -> None:
            logger.debug("Input data channel message: %r", message)

    def set_command_channel(self, channel: DataChannel) -> None:
        self._command_channel = channel
        logger.debug("Received command data channel %s", channel.label)

        @channel.on("open")
        def _on_open() -> None:
            if channel is self._command_channel:
                self.monitor_queues()

        @channel.on("close")
        def _on_close() -> None:
            if channel is self._command_channel:
                self.stop_monitoring_queues()

        @channel.on("message")
        def _on_message(message: Any) -> None:
            self.handle_message(message)

        if channel.readyState == "open":
            self.monitor_queues()

    def reset_channels(self) -> None:
        """Forget both data channels and stop the pump."""

        self.stop_monitoring_queues()
        self._input_channel = None
        self._command_channel = None

    # ----------------------------- implementation --------------------------
    def _entry(self, name: str) -> CommandEntry:
        entry = self._entries.get(name)
        if entry is None:
            entry = CommandEntry()
            self._entries[name] = entry
        return entry

    @staticmethod
    def _validate_interval(interval: float) -> float:
        value = float(interval)
        if value <= 0:
            raise ValueError("Command queue interval must be positive")
        return value


__all__ = [
    "BinaryCommand",
    "COMMAND_CHANNEL_LABEL",
    "Command",
    "CommandController",
    "CommandEntry",
    "DEFAULT_COMMAND_QUEUE_INTERVAL",
    "DataChannel",
    "INPUT_CHANNEL_LABEL",
    "JsonCommand",
    "Listener",
    "ListenerState",
]
