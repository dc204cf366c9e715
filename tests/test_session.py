from __future__ import annotations

import asyncio
import time

import pytest
from aiortc import RTCConfiguration, RTCPeerConnection, RTCSessionDescription

from conftest import OFFER_SDP, StubTrack
from mixlink.config import SessionConfig
from mixlink.session import Session
from mixlink.states import (
    ALREADY_CLOSED_MESSAGE,
    ALREADY_OPEN_MESSAGE,
    SessionError,
    SessionStates,
    SessionTimeoutError,
    StateChangeEvent,
)
from mixlink.streams import MediaStream


CANDIDATE_MESSAGES = [
    {"candidate": "candidate:1 1 udp 2130706431 192.168.1.2 50000 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
    {"candidate": "candidate:2 1 udp 1694498815 203.0.113.7 50001 typ srflx raddr 192.168.1.2 rport 50000", "sdpMid": "0", "sdpMLineIndex": 0},
]


def run_async(coro):
    return asyncio.run(coro)


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


async def _connected_session(signaling, peer_connections) -> Session:
    session = Session(peer_connection_factory=peer_connections)
    task = asyncio.ensure_future(session.open(signaling))
    await _settle()
    signaling.deliver({session.session_id: {"sdp": OFFER_SDP, "type": "offer"}})
    await _settle()
    peer_connections.created[-1].set_ice_state("completed")
    assert await task is SessionStates.COMPLETED
    return session


def test_new_session_starts_closed() -> None:
    session = Session()
    assert session.state is SessionStates.CLOSED
    assert session.session_id
    assert Session().session_id != session.session_id


def test_close_when_already_closed_is_informational() -> None:
    assert run_async(Session().close()) == ALREADY_CLOSED_MESSAGE


def test_open_while_connected_is_informational(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = await _connected_session(signaling, peer_connections)
        events: list[StateChangeEvent] = []
        session.add_state_change_handler(events.append)
        sent_before = list(signaling.sent)

        for _ in range(3):
            assert await session.open(signaling) == ALREADY_OPEN_MESSAGE

        assert session.state is SessionStates.COMPLETED
        assert events == []
        assert signaling.sent == sent_before

    run_async(_test())


def test_open_times_out_and_closes(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = Session(peer_connection_factory=peer_connections)
        started = time.monotonic()

        with pytest.raises(SessionTimeoutError) as excinfo:
            await session.open(signaling, timeout=0.1)

        elapsed = time.monotonic() - started
        assert elapsed == pytest.approx(0.1, abs=0.5)
        assert "timed out after 100 ms" in str(excinfo.value)
        assert session.state is SessionStates.CLOSED
        assert signaling._message_handlers == []

    run_async(_test())


def test_open_timeout_from_config(signaling) -> None:
    async def _test() -> None:
        session = Session(SessionConfig(open_timeout=0.05))
        with pytest.raises(SessionTimeoutError):
            await session.open(signaling)

    run_async(_test())


def test_repeated_state_only_notifies_once_but_still_settles() -> None:
    async def _test() -> None:
        session = Session()
        session._state = SessionStates.CONNECTED
        events: list[StateChangeEvent] = []
        session.add_state_change_handler(events.append)

        session._handle_state_change(None, SessionStates.CLOSED)
        pending = asyncio.get_running_loop().create_future()
        session._pending_close = pending
        session._handle_state_change(None, SessionStates.CLOSED)

        assert [event.state for event in events] == [SessionStates.CLOSED]
        assert pending.result() is SessionStates.CLOSED
        assert session._pending_close is None

    run_async(_test())


def test_state_handler_errors_are_logged(caplog) -> None:
    session = Session()

    def _boom(_: StateChangeEvent) -> None:
        raise RuntimeError("boom")

    received: list[StateChangeEvent] = []
    session.add_state_change_handler(_boom)
    session.add_state_change_handler(received.append)
    session._handle_state_change(StateChangeEvent(SessionStates.NEW, "why"), "new")

    assert received == [StateChangeEvent(SessionStates.NEW, "why")]
    assert "Session state handler raised" in caplog.text
    session.remove_state_change_handler(received.append)
    session._handle_state_change(None, SessionStates.CONNECTED)
    assert len(received) == 1


def test_disconnected_leaves_open_pending(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = Session(peer_connection_factory=peer_connections)
        task = asyncio.ensure_future(session.open(signaling))
        await _settle()
        signaling.deliver({session.session_id: {"sdp": OFFER_SDP, "type": "offer"}})
        await _settle()
        pc = peer_connections.created[0]

        pc.set_ice_state("disconnected")
        await _settle()
        assert not task.done()
        assert session.state is SessionStates.DISCONNECTED

        pc.set_ice_state("connected")
        assert await task is SessionStates.CONNECTED

    run_async(_test())


def test_failed_rejects_open_and_closes_afterwards(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = Session(peer_connection_factory=peer_connections)
        states: list[SessionStates] = []
        session.add_state_change_handler(lambda event: states.append(event.state))
        task = asyncio.ensure_future(session.open(signaling))
        await _settle()
        signaling.deliver({session.session_id: {"sdp": OFFER_SDP, "type": "offer"}})
        await _settle()
        pc = peer_connections.created[0]

        pc.set_ice_state("failed")

        # the rejection does not wait for the follow-up close
        assert session.state is SessionStates.FAILED
        assert pc.closed is False
        with pytest.raises(SessionError) as excinfo:
            await task
        assert excinfo.value.state is SessionStates.FAILED
        await _settle()
        assert pc.closed is True
        assert session.state is SessionStates.CLOSED
        assert session.negotiation.peer_connection is None
        assert states[-2:] == [SessionStates.FAILED, SessionStates.CLOSED]

    run_async(_test())


def test_close_mid_negotiation_rejects_open_once(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = Session(peer_connection_factory=peer_connections)
        rejections = 0
        task = asyncio.ensure_future(session.open(signaling))

        def _count(done: asyncio.Future) -> None:
            nonlocal rejections
            if not done.cancelled() and done.exception() is not None:
                rejections += 1

        task.add_done_callback(_count)
        await _settle()
        signaling.deliver({session.session_id: {"sdp": OFFER_SDP, "type": "offer"}})
        for message in CANDIDATE_MESSAGES:
            signaling.deliver({session.session_id: {"ice": message}})
        pc = peer_connections.created[0]

        assert await session.close() is SessionStates.CLOSED
        await _settle()

        assert session.state is SessionStates.CLOSED
        assert pc.closed is True
        assert session.negotiation.peer_connection is None
        assert task.done()
        assert isinstance(task.exception(), SessionError)
        assert rejections == 1

    run_async(_test())


def test_close_stops_streams_and_command_pump(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = await _connected_session(signaling, peer_connections)
        session.command_controller.monitor_queues()
        remote = StubTrack("audio")
        local = StubTrack("audio")
        await session.stream_controller._set_audio_stream(MediaStream([remote]))
        session.stream_controller.set_input_audio(MediaStream([local]))

        assert await session.close() is SessionStates.CLOSED

        assert session.command_controller.is_monitoring is False
        assert remote.stopped is True
        assert local.stopped is False
        assert peer_connections.created[0].closed is True

    run_async(_test())


def test_session_can_reopen_after_close(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = await _connected_session(signaling, peer_connections)
        await session.close()

        task = asyncio.ensure_future(session.open(signaling))
        await _settle()
        signaling.deliver({session.session_id: {"sdp": OFFER_SDP, "type": "offer"}})
        await _settle()

        assert len(peer_connections.created) == 2
        peer_connections.created[1].set_ice_state("completed")
        assert await task is SessionStates.COMPLETED

    run_async(_test())


def test_second_open_supersedes_pending_one(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = Session(peer_connection_factory=peer_connections)
        first = asyncio.ensure_future(session.open(signaling))
        await _settle()
        second = asyncio.ensure_future(session.open(signaling))
        await _settle()

        assert first.done()
        assert isinstance(first.exception(), SessionError)
        assert not second.done()
        second.cancel()

    run_async(_test())


def test_stats_observers_are_forwarded(signaling, peer_connections) -> None:
    async def _test() -> None:
        session = Session(SessionConfig(stats_interval=0.01), peer_connection_factory=peer_connections)
        samples: list[list[dict]] = []
        observer = lambda current, previous: samples.append(current)  # noqa: E731
        session.add_stats_observer(observer)
        task = asyncio.ensure_future(session.open(signaling))
        await _settle()
        signaling.deliver({session.session_id: {"sdp": OFFER_SDP, "type": "offer"}})
        await _settle()
        peer_connections.created[0].stats = {
            "x": {"id": "x", "type": "inbound-rtp", "timestamp": 1, "bytesReceived": 10}
        }
        await asyncio.sleep(0.05)

        assert samples and samples[-1][0]["bytesReceived"] == 10
        session.remove_stats_observer(observer)
        assert session.negotiation.stats_watcher.is_running is False
        task.cancel()

    run_async(_test())


def test_negotiation_with_real_peer_connection(signaling) -> None:
    async def _test() -> None:
        created: list[RTCPeerConnection] = []

        def _factory(configuration=None) -> RTCPeerConnection:
            pc = RTCPeerConnection(RTCConfiguration(iceServers=[]))
            created.append(pc)
            return pc

        mixer = RTCPeerConnection(RTCConfiguration(iceServers=[]))
        mixer.createDataChannel("ravi.command")
        mixer.addTransceiver("audio", direction="sendrecv")
        session = Session(peer_connection_factory=_factory)
        try:
            task = asyncio.ensure_future(session.open(signaling, timeout=10))
            await _settle()
            await mixer.setLocalDescription(await mixer.createOffer())
            offer = mixer.localDescription
            signaling.deliver({session.session_id: {"sdp": offer.sdp, "type": offer.type}})

            for _ in range(500):
                if signaling.sent and signaling.sent[-1].get("type") == "answer":
                    break
                await asyncio.sleep(0.01)

            answer = signaling.sent[-1]
            assert answer["uuid"] == session.session_id
            assert "sprop-stereo=1" in answer["sdp"]["sdp"]
            await mixer.setRemoteDescription(RTCSessionDescription(**answer["sdp"]))
            assert mixer.signalingState == "stable"
            assert session.stream_controller.audio_stream is not None

            await session.close()
            assert session.state is SessionStates.CLOSED
            assert created[0].connectionState == "closed"
            await _settle()
            assert task.done()
            if task.exception() is None:
                assert task.result() in (SessionStates.CONNECTED, SessionStates.COMPLETED)
        finally:
            await mixer.close()

    run_async(_test())
