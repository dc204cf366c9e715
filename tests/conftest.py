from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import Any, Callable

import pytest
from aiortc import RTCSessionDescription

from mixlink.signaling import SignalingConnection


OFFER_SDP = (
    "v=0\r\n"
    "o=- 0 0 IN IP4 127.0.0.1\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
    "a=fmtp:111 minptime=10;useinbandfec=1\r\n"
)

# aiortc answers carry no fmtp line for opus
ANSWER_SDP = OFFER_SDP.replace("o=- 0 0", "o=- 1 1").replace("a=fmtp:111 minptime=10;useinbandfec=1\r\n", "")


class _Emitter:
    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, f: Callable[..., Any] | None = None):
        def _register(func: Callable[..., Any]) -> Callable[..., Any]:
            self._handlers[event].append(func)
            return func

        if f is not None:
            return _register(f)
        return _register

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            result = handler(*args)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)


class StubDataChannel(_Emitter):
    def __init__(self, label: str, ready_state: str = "open") -> None:
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.sent: list[str | bytes] = []
        self.fail_sends = False

    def send(self, data: str | bytes) -> None:
        if self.readyState != "open" or self.fail_sends:
            raise RuntimeError("data channel is not open")
        self.sent.append(data)


class StubTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class StubSender:
    def __init__(self, track: StubTrack | None) -> None:
        self.track = track
        self.replaced: list[StubTrack | None] = []

    def replaceTrack(self, track: StubTrack | None) -> None:
        self.replaced.append(track)
        self.track = track


class FakePeerConnection(_Emitter):
    """Implements the parts of RTCPeerConnection the negotiation engine touches."""

    def __init__(self, configuration: Any = None) -> None:
        super().__init__()
        self.configuration = configuration
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.signalingState = "stable"
        self.remoteDescription: RTCSessionDescription | None = None
        self.localDescription: RTCSessionDescription | None = None
        self.senders: list[StubSender] = []
        self.candidates: list[Any] = []
        self.stats: dict[str, Any] = {}
        self.closed = False
        self.fail_remote_description = False

    def getSenders(self) -> list[StubSender]:
        return list(self.senders)

    def addTrack(self, track: StubTrack) -> StubSender:
        sender = StubSender(track)
        self.senders.append(sender)
        return sender

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        if self.fail_remote_description:
            raise ValueError("bad offer")
        self.remoteDescription = description
        self.signalingState = "have-remote-offer"

    async def createAnswer(self) -> RTCSessionDescription:
        await asyncio.sleep(0)
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        await asyncio.sleep(0)
        self.localDescription = description
        self.signalingState = "stable"
        self.connectionState = "connecting"

    async def addIceCandidate(self, candidate: Any) -> None:
        self.candidates.append(candidate)

    async def getStats(self) -> dict[str, Any]:
        return self.stats

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"
        self.set_ice_state("closed")

    def set_ice_state(self, state: str) -> None:
        self.iceConnectionState = state
        if state in {"connected", "completed"}:
            self.connectionState = "connected"
        self.emit("iceconnectionstatechange")


class RecordingSignaling(SignalingConnection):
    def __init__(self) -> None:
        super().__init__()
        self.sent: list[dict[str, Any]] = []

    def _send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    def deliver(self, payload: Any) -> None:
        self._handle_message(json.dumps(payload))

    def set_state(self, state: Any) -> None:
        self._handle_state_change(state)


@pytest.fixture
def peer_connections():
    created: list[FakePeerConnection] = []

    def factory(configuration: Any = None) -> FakePeerConnection:
        pc = FakePeerConnection(configuration)
        created.append(pc)
        return pc

    factory.created = created  # type: ignore[attr-defined]
    return factory


@pytest.fixture
def signaling() -> RecordingSignaling:
    return RecordingSignaling()
