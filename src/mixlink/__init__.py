"""MixLink package exposing the client session for a remote mixing server."""

from .commands import CommandController
from .comms_log import CommsLog
from .config import SessionConfig, SessionParams, StunTurnConfig, load_session_config
from .session import Session
from .signaling import SignalingConnection, SignalingStates
from .states import SessionError, SessionStates, SessionTimeoutError, StateChangeEvent
from .streams import MediaStream, StreamController
from .version import APP_VERSION


__all__ = [
    "APP_VERSION",
    "CommandController",
    "CommsLog",
    "MediaStream",
    "Session",
    "SessionConfig",
    "SessionError",
    "SessionParams",
    "SessionStates",
    "SessionTimeoutError",
    "SignalingConnection",
    "SignalingStates",
    "StateChangeEvent",
    "StreamController",
    "StunTurnConfig",
    "load_session_config",
]
