"""Configuration values for MixLink sessions."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from aiortc import RTCConfiguration, RTCIceServer

from .commands import DEFAULT_COMMAND_QUEUE_INTERVAL
from .stats import DEFAULT_STATS_INTERVAL


DEFAULT_STUN_URLS: tuple[str, ...] = ("stun:stun.l.google.com:19302",)
LEGACY_TURN_URLS: tuple[str, ...] = ("turn:turn.highfidelity.com:3478",)
LEGACY_TURN_USERNAME = "clouduser"
LEGACY_TURN_CREDENTIAL = "chariot-travesty-hook"

DEFAULT_OPEN_TIMEOUT = 5.0

_STUN_SCHEMES = ("stun:", "stuns:")
_TURN_SCHEMES = ("turn:", "turns:")


class ConfigError(ValueError):
    """Raised when configuration values are invalid."""


def _clean_urls(urls: Iterable[str] | str | None, schemes: Sequence[str], label: str) -> tuple[str, ...]:
    if urls is None:
        raise ConfigError(f"{label} URLs are required")
    if isinstance(urls, str):
        urls = [urls]
    cleaned: list[str] = []
    for url in urls:
        if not isinstance(url, str) or not url.strip():
            raise ConfigError(f"{label} URLs must be non-empty strings")
        value = url.strip()
        if not value.lower().startswith(tuple(schemes)):
            raise ConfigError(f"{label} URL {value!r} must start with one of {', '.join(schemes)}")
        cleaned.append(value)
    if not cleaned:
        raise ConfigError(f"At least one {label} URL is required")
    return tuple(cleaned)


def _clean_secret(value: object, label: str) -> str:
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{label} must be a non-empty string")
    return value


def _positive_seconds(value: object, label: str) -> float:
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be numeric") from exc
    if not math.isfinite(seconds) or seconds <= 0:
        raise ConfigError(f"{label} must be a positive number of seconds")
    return seconds


@dataclass(frozen=True, slots=True)
class SessionParams:
    """Jitter buffer bounds requested from the mixer when opening a session."""

    audio_min_jitter_buffer_duration: float = 0.0
    audio_max_jitter_buffer_duration: float = 1.0

    def __post_init__(self) -> None:
        try:
            minimum = float(self.audio_min_jitter_buffer_duration)
            maximum = float(self.audio_max_jitter_buffer_duration)
        except (TypeError, ValueError) as exc:
            raise ConfigError("Jitter buffer durations must be numeric") from exc
        if not (math.isfinite(minimum) and math.isfinite(maximum)):
            raise ConfigError("Jitter buffer durations must be finite")
        if minimum < 0 or maximum < 0:
            raise ConfigError("Jitter buffer durations must not be negative")
        if minimum > maximum:
            raise ConfigError("Minimum jitter buffer duration exceeds the maximum")
        object.__setattr__(self, "audio_min_jitter_buffer_duration", minimum)
        object.__setattr__(self, "audio_max_jitter_buffer_duration", maximum)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionParams":
        minimum = data.get("audio_min_jitter_buffer_duration", data.get("audioMinJitterBufferDuration", 0.0))
        maximum = data.get("audio_max_jitter_buffer_duration", data.get("audioMaxJitterBufferDuration", 1.0))
        return cls(minimum, maximum)

    def to_dict(self) -> dict[str, float]:
        return {
            "audio_min_jitter_buffer_duration": self.audio_min_jitter_buffer_duration,
            "audio_max_jitter_buffer_duration": self.audio_max_jitter_buffer_duration,
        }

    def to_request(self, session_id: str) -> dict[str, Any]:
        """Return the body of the ``request`` message that opens a session."""

        return {
            "audioMinJitterBufferDuration": self.audio_min_jitter_buffer_duration,
            "audioMaxJitterBufferDuration": self.audio_max_jitter_buffer_duration,
            "sessionID": session_id,
        }


@dataclass(frozen=True, slots=True)
class TurnServer:
    """A single TURN server entry with its credentials."""

    urls: tuple[str, ...]
    username: str
    credential: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "urls", _clean_urls(self.urls, _TURN_SCHEMES, "TURN"))
        object.__setattr__(self, "username", _clean_secret(self.username, "TURN username"))
        object.__setattr__(self, "credential", _clean_secret(self.credential, "TURN credential"))

    @classmethod
    def from_signal(cls, data: object) -> "TurnServer | None":
        """Parse the ``turn`` entry a mixer may embed in its offer.

        Incomplete or malformed entries yield ``None``.
        """

        if not isinstance(data, Mapping):
            return None
        urls = data.get("urls")
        username = data.get("username")
        credential = data.get("credential")
        if not urls or not username or not credential:
            return None
        try:
            return cls(urls, username, credential)
        except ConfigError:
            return None

    def to_ice_server(self) -> RTCIceServer:
        return RTCIceServer(urls=list(self.urls), username=self.username, credential=self.credential)


@dataclass(frozen=True, slots=True)
class StunTurnConfig:
    """Caller supplied STUN and TURN servers; every field is required."""

    stun_urls: tuple[str, ...]
    turn_urls: tuple[str, ...]
    turn_username: str
    turn_credential: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "stun_urls", _clean_urls(self.stun_urls, _STUN_SCHEMES, "STUN"))
        object.__setattr__(self, "turn_urls", _clean_urls(self.turn_urls, _TURN_SCHEMES, "TURN"))
        object.__setattr__(self, "turn_username", _clean_secret(self.turn_username, "TURN username"))
        object.__setattr__(self, "turn_credential", _clean_secret(self.turn_credential, "TURN credential"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StunTurnConfig":
        return cls(
            data.get("stun_urls", data.get("stunUrls")),
            data.get("turn_urls", data.get("turnUrls")),
            data.get("turn_username", data.get("turnUsername")),
            data.get("turn_credential", data.get("turnCredential")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "stun_urls": list(self.stun_urls),
            "turn_urls": list(self.turn_urls),
            "turn_username": self.turn_username,
            "turn_credential": self.turn_credential,
        }

    def to_ice_servers(self) -> list[RTCIceServer]:
        return [
            RTCIceServer(urls=list(self.stun_urls)),
            RTCIceServer(urls=list(self.turn_urls), username=self.turn_username, credential=self.turn_credential),
        ]


@dataclass(frozen=True, slots=True)
class IceDefaults:
    """Built in STUN server and legacy TURN relay used when nothing else is known."""

    stun_urls: tuple[str, ...] = DEFAULT_STUN_URLS
    legacy_turn: TurnServer = field(
        default_factory=lambda: TurnServer(LEGACY_TURN_URLS, LEGACY_TURN_USERNAME, LEGACY_TURN_CREDENTIAL)
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "stun_urls", _clean_urls(self.stun_urls, _STUN_SCHEMES, "STUN"))

    def stun_server(self) -> RTCIceServer:
        return RTCIceServer(urls=list(self.stun_urls))


DEFAULT_ICE = IceDefaults()


def resolve_ice_servers(
    custom: StunTurnConfig | None,
    dynamic_turn: object = None,
    defaults: IceDefaults = DEFAULT_ICE,
) -> list[RTCIceServer]:
    """Pick the ICE servers for a new peer connection.

    A caller override wins, then a TURN server supplied by the mixer, then the
    built in defaults.
    """

    if custom is not None:
        return custom.to_ice_servers()
    turn = TurnServer.from_signal(dynamic_turn)
    if turn is not None:
        return [defaults.stun_server(), turn.to_ice_server()]
    return [defaults.stun_server(), defaults.legacy_turn.to_ice_server()]


def build_rtc_configuration(
    custom: StunTurnConfig | None,
    dynamic_turn: object = None,
    defaults: IceDefaults = DEFAULT_ICE,
) -> RTCConfiguration:
    return RTCConfiguration(iceServers=resolve_ice_servers(custom, dynamic_turn, defaults))


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Per session defaults applied when ``open`` is called without overrides."""

    open_timeout: float = DEFAULT_OPEN_TIMEOUT
    command_queue_interval: float = DEFAULT_COMMAND_QUEUE_INTERVAL
    stats_interval: float = DEFAULT_STATS_INTERVAL
    params: SessionParams | None = None
    stun_turn: StunTurnConfig | None = None
    ice_defaults: IceDefaults = DEFAULT_ICE

    def __post_init__(self) -> None:
        object.__setattr__(self, "open_timeout", _positive_seconds(self.open_timeout, "open_timeout"))
        object.__setattr__(
            self,
            "command_queue_interval",
            _positive_seconds(self.command_queue_interval, "command_queue_interval"),
        )
        object.__setattr__(self, "stats_interval", _positive_seconds(self.stats_interval, "stats_interval"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SessionConfig":
        if not isinstance(data, Mapping):
            raise ConfigError("Session configuration must be a JSON object")
        params = data.get("params")
        stun_turn = data.get("stun_turn")
        ice = data.get("ice_defaults")
        ice_defaults = DEFAULT_ICE
        if isinstance(ice, Mapping):
            turn = ice.get("legacy_turn")
            ice_defaults = IceDefaults(
                stun_urls=ice.get("stun_urls", DEFAULT_STUN_URLS),
                legacy_turn=TurnServer(turn["urls"], turn["username"], turn["credential"])
                if isinstance(turn, Mapping)
                else DEFAULT_ICE.legacy_turn,
            )
        return cls(
            open_timeout=data.get("open_timeout", DEFAULT_OPEN_TIMEOUT),
            command_queue_interval=data.get("command_queue_interval", DEFAULT_COMMAND_QUEUE_INTERVAL),
            stats_interval=data.get("stats_interval", DEFAULT_STATS_INTERVAL),
            params=SessionParams.from_dict(params) if isinstance(params, Mapping) else None,
            stun_turn=StunTurnConfig.from_dict(stun_turn) if isinstance(stun_turn, Mapping) else None,
            ice_defaults=ice_defaults,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "open_timeout": self.open_timeout,
            "command_queue_interval": self.command_queue_interval,
            "stats_interval": self.stats_interval,
            "params": self.params.to_dict() if self.params is not None else None,
            "stun_turn": self.stun_turn.to_dict() if self.stun_turn is not None else None,
            "ice_defaults": {
                "stun_urls": list(self.ice_defaults.stun_urls),
                "legacy_turn": {
                    "urls": list(self.ice_defaults.legacy_turn.urls),
                    "username": self.ice_defaults.legacy_turn.username,
                    "credential": self.ice_defaults.legacy_turn.credential,
                },
            },
        }


def load_session_config(path: Path | str) -> SessionConfig:
    """Read a :class:`SessionConfig` from a JSON file; a missing file yields defaults."""

    config_path = Path(path)
    if not config_path.exists():
        return SessionConfig()
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise ConfigError(f"Invalid session configuration in {config_path}: {exc}") from exc
    try:
        return SessionConfig.from_dict(payload)
    except (KeyError, TypeError) as exc:
        raise ConfigError(f"Invalid session configuration in {config_path}: {exc}") from exc


__all__ = [
    "ConfigError",
    "DEFAULT_ICE",
    "DEFAULT_STUN_URLS",
    "IceDefaults",
    "LEGACY_TURN_CREDENTIAL",
    "LEGACY_TURN_URLS",
    "LEGACY_TURN_USERNAME",
    "SessionConfig",
    "SessionParams",
    "StunTurnConfig",
    "TurnServer",
    "build_rtc_configuration",
    "load_session_config",
    "resolve_ice_servers",
]
