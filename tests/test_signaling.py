from __future__ import annotations

import json

import pytest

from conftest import RecordingSignaling
from mixlink.signaling import SignalingConnection, SignalingStateEvent, SignalingStates


def test_state_handlers_fire_once_per_change() -> None:
    signaling = RecordingSignaling()
    events: list[SignalingStateEvent] = []
    signaling.add_state_change_handler(events.append)
    signaling.add_state_change_handler(events.append)

    signaling.set_state(SignalingStates.OPEN)
    signaling.set_state(SignalingStates.OPEN)
    signaling.set_state("closed")

    assert [event.state for event in events] == [SignalingStates.OPEN, SignalingStates.CLOSED]
    assert signaling.state is SignalingStates.CLOSED


def test_removed_handlers_stop_receiving() -> None:
    signaling = RecordingSignaling()
    messages: list[str] = []
    signaling.add_message_handler(messages.append)
    signaling.deliver({"a": 1})
    signaling.remove_message_handler(messages.append)
    signaling.remove_message_handler(messages.append)
    signaling.deliver({"a": 2})

    assert [json.loads(message) for message in messages] == [{"a": 1}]


def test_service_unavailable_message_switches_state() -> None:
    signaling = RecordingSignaling()
    signaling.set_state(SignalingStates.OPEN)
    events: list[SignalingStateEvent] = []
    messages: list[str] = []
    signaling.add_state_change_handler(events.append)
    signaling.add_message_handler(messages.append)

    signaling.deliver({"error": "service-unavailable"})

    assert signaling.state is SignalingStates.UNAVAILABLE
    assert events[0].reason == "service-unavailable"
    assert len(messages) == 1


def test_non_json_messages_still_reach_handlers() -> None:
    signaling = RecordingSignaling()
    messages: list[str] = []
    signaling.add_message_handler(messages.append)

    signaling._handle_message("hello")

    assert messages == ["hello"]
    assert signaling.state is SignalingStates.CLOSED


@pytest.mark.parametrize(
    ("code", "expected"),
    [(1000, SignalingStates.CLOSED), (4001, SignalingStates.ERROR), (None, SignalingStates.CLOSED)],
)
def test_custom_close_codes_are_errors(code, expected) -> None:
    signaling = RecordingSignaling()
    signaling.set_state(SignalingStates.OPEN)

    signaling._handle_close(code, "bye")

    assert signaling.state is expected


def test_base_class_requires_transport() -> None:
    with pytest.raises(NotImplementedError):
        SignalingConnection().send("x")


def test_send_goes_through_transport() -> None:
    signaling = RecordingSignaling()
    signaling.send(json.dumps({"request": "abc"}))
    assert signaling.sent == [{"request": "abc"}]
