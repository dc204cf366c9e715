"""Peer connection negotiation driven by the mixer over a signaling channel."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Mapping

from aiortc import RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .config import DEFAULT_ICE, IceDefaults, SessionParams, StunTurnConfig, build_rtc_configuration
from .signaling import SignalingChannel, SignalingStateEvent, SignalingStates
from .states import SessionStates, StateChangeEvent
from .stats import DEFAULT_STATS_INTERVAL, StatsObserver, StatsWatcher

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from aiortc import RTCRtpSender

    from .session import Session
    from .streams import MediaStream


logger = logging.getLogger(__name__)


DEFAULT_OPUS_PAYLOAD_TYPE = 111
STEREO_UPSTREAM_BITRATE = 128000
MONO_UPSTREAM_BITRATE = 64000
DOWNSTREAM_BITRATE = 128000

_OPUS_RTPMAP = re.compile(r"^a=rtpmap:(\d+) opus/", re.IGNORECASE | re.MULTILINE)
_CANDIDATE_PREFIX = "candidate:"


# ------------------------------ SDP munging --------------------------------
def opus_payload_types(sdp: str) -> list[int]:
    """Return the payload types mapped to opus, defaulting to 111."""

    found: list[int] = []
    for match in _OPUS_RTPMAP.finditer(sdp):
        value = int(match.group(1))
        if value not in found:
            found.append(value)
    return found or [DEFAULT_OPUS_PAYLOAD_TYPE]


def _prefix_opus_fmtp(sdp: str, parameters: str) -> str:
    for payload_type in opus_payload_types(sdp):
        prefix = f"a=fmtp:{payload_type} "
        if prefix in sdp:
            sdp = sdp.replace(prefix, f"{prefix}{parameters};")
            continue
        # aiortc writes no fmtp line for opus, so add one below the rtpmap
        rtpmap = re.compile(rf"^(a=rtpmap:{payload_type} opus/[^\r\n]*)(\r?\n)", re.IGNORECASE | re.MULTILINE)
        sdp = rtpmap.sub(lambda match: f"{match.group(1)}{match.group(2)}{prefix}{parameters}{match.group(2)}", sdp)
    return sdp


def force_bitrate_up(sdp: str, stereo: bool) -> str:
    """Ask for a minimum upstream opus bitrate suited to the local input."""

    bitrate = STEREO_UPSTREAM_BITRATE if stereo else MONO_UPSTREAM_BITRATE
    return _prefix_opus_fmtp(sdp, f"maxaveragebitrate={bitrate}")


def force_stereo_down(sdp: str) -> str:
    """Request high bitrate stereo opus for the downstream mix."""

    return _prefix_opus_fmtp(sdp, f"maxaveragebitrate={DOWNSTREAM_BITRATE};sprop-stereo=1;stereo=1")


# ------------------------------ ICE candidates -----------------------------
def candidate_from_message(ice: object) -> RTCIceCandidate | None:
    """Convert a ``{candidate, sdpMid, sdpMLineIndex}`` object into an aiortc candidate."""

    if not isinstance(ice, Mapping):
        raise ValueError("ICE candidate must be an object")
    text = ice.get("candidate")
    if not text:
        return None
    if text.startswith(_CANDIDATE_PREFIX):
        text = text[len(_CANDIDATE_PREFIX) :]
    candidate = candidate_from_sdp(text)
    candidate.sdpMid = ice.get("sdpMid")
    candidate.sdpMLineIndex = ice.get("sdpMLineIndex")
    return candidate


def candidate_to_message(candidate: Any) -> dict[str, Any]:
    if isinstance(candidate, Mapping):
        return dict(candidate)
    return {
        "candidate": _CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class NegotiationEngine:
    """Own the peer connection for a session and negotiate it with the mixer.

    The mixer always makes the offer. The peer connection is created when the
    first remote description arrives so that a TURN server announced in that
    message can be part of its ICE configuration.
    """

    def __init__(
        self,
        session: "Session",
        *,
        ice_defaults: IceDefaults = DEFAULT_ICE,
        peer_connection_factory: Callable[..., Any] | None = None,
        stats_interval: float = DEFAULT_STATS_INTERVAL,
    ) -> None:
        self._session = session
        self._ice_defaults = ice_defaults
        self._peer_connection_factory = peer_connection_factory or RTCPeerConnection
        self._signaling: SignalingChannel | None = None
        self._pc: Any | None = None
        self._audio_senders: list["RTCRtpSender"] = []
        self._video_senders: list["RTCRtpSender"] = []
        self._audio_input: "MediaStream | None" = None
        self._video_input: "MediaStream | None" = None
        self._custom_stun_turn: StunTurnConfig | None = None
        self._stats = StatsWatcher(self.get_stats, interval=stats_interval)
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closing: asyncio.Task[None] | None = None

    # ------------------------------ properties -----------------------------
    @property
    def peer_connection(self) -> Any | None:
        return self._pc

    @property
    def signaling(self) -> SignalingChannel | None:
        return self._signaling

    @property
    def audio_senders(self) -> list["RTCRtpSender"]:
        return list(self._audio_senders)

    @property
    def video_senders(self) -> list["RTCRtpSender"]:
        return list(self._video_senders)

    @property
    def stats_watcher(self) -> StatsWatcher:
        return self._stats

    # ------------------------------ lifecycle ------------------------------
    def assign_signaling(self, channel: SignalingChannel) -> None:
        self._signaling = channel

    def open(self, params: SessionParams | None = None, custom_stun_turn: StunTurnConfig | None = None) -> None:
        """Register with the signaling channel and ask the mixer for an offer."""

        logger.info("Attempting to open session %s", self._session.session_id)
        self._custom_stun_turn = custom_stun_turn
        pc = self._pc
        if pc is not None and pc.connectionState in ("connecting", "connected"):
            logger.info("A connection is already in progress; not starting another")
            self._report_ice_state(pc.iceConnectionState)
            return
        signaling = self._signaling
        if signaling is None:
            logger.error("No signaling channel assigned; cannot open session")
            return
        signaling.add_message_handler(self._handle_signaling_message)
        signaling.add_state_change_handler(self._cancel_open_on_signaling_loss)
        request: Any = self._session.session_id
        if params is not None:
            request = params.to_request(self._session.session_id)
        self._send({"request": request})

    async def close(self) -> None:
        """Tear everything down and report the session as closed."""

        logger.info("Closing peer connection")
        self._stats.stop()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        pc = self._pc
        self._pc = None
        self._audio_senders = []
        self._video_senders = []
        if pc is not None:
            try:
                await pc.close()
            except Exception:  # pragma: no cover - defensive logging
                logger.debug("Ignoring error while closing peer connection", exc_info=True)
        signaling = self._signaling
        if signaling is not None:
            signaling.remove_message_handler(self._handle_signaling_message)
            signaling.remove_state_change_handler(self._cancel_open_on_signaling_loss)
        self._session._handle_state_change(StateChangeEvent(SessionStates.CLOSED), SessionStates.CLOSED)

    def request_close(self) -> asyncio.Task[None]:
        """Schedule :meth:`close` unless one is already underway."""

        if self._closing is None or self._closing.done():
            self._closing = asyncio.get_running_loop().create_task(self.close())
        return self._closing

    def _cancel_open_on_signaling_loss(self, event: SignalingStateEvent) -> None:
        state = event.state
        if state == SignalingStates.CLOSED:
            logger.info("Signaling closed before the session was established; closing session")
            self._session._handle_state_change(
                StateChangeEvent(SessionStates.CLOSED, event.reason), SessionStates.CLOSED
            )
        elif state in (SignalingStates.ERROR, SignalingStates.UNAVAILABLE):
            logger.warning("Signaling became %s before the session was established; closing session", state.value)
            self._session._handle_state_change(
                StateChangeEvent(SessionStates.FAILED, event.reason or state.value), SessionStates.FAILED
            )
        else:
            logger.debug("Signaling state changed to %s while opening", state.value)
            return
        self.request_close()

    # ------------------------------ signaling ------------------------------
    def _handle_signaling_message(self, message: str) -> None:
        try:
            payload = json.loads(message)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON signaling message")
            return
        if not isinstance(payload, dict):
            return
        signal = payload.get(self._session.session_id)
        if not isinstance(signal, dict):
            return
        if signal.get("sdp"):
            self._handle_remote_description(signal)
        elif signal.get("ice"):
            self._handle_remote_candidate(signal["ice"])
        else:
            logger.debug("Unknown signal for this session: %r", signal)

    def _handle_remote_description(self, signal: Mapping[str, Any]) -> None:
        sdp_type = signal.get("type") or "offer"
        logger.debug("Received remote description of type %s", sdp_type)
        if self._pc is None:
            configuration = build_rtc_configuration(
                self._custom_stun_turn, signal.get("turn"), self._ice_defaults
            )
            self._create_peer_connection(configuration)
        self._spawn(self._negotiate(self._pc, str(signal["sdp"]), str(sdp_type)))

    def _handle_remote_candidate(self, ice: object) -> None:
        if self._pc is None:
            logger.info("Dropping remote ICE candidate received before the peer connection exists")
            return
        try:
            candidate = candidate_from_message(ice)
        except (ValueError, IndexError) as exc:
            logger.warning("Ignoring malformed remote ICE candidate %r: %s", ice, exc)
            return
        if candidate is None:
            logger.debug("End of remote ICE candidates")
            return
        self._spawn(self._add_candidate(self._pc, candidate))

    async def _negotiate(self, pc: Any, sdp: str, sdp_type: str) -> None:
        async with self._lock:
            if pc is not self._pc:
                return
            try:
                stereo = self._session.stream_controller.is_stereo_input()
                offer = RTCSessionDescription(sdp=force_bitrate_up(sdp, stereo), type=sdp_type)
                await pc.setRemoteDescription(offer)
                answer = await pc.createAnswer()
                answer = RTCSessionDescription(sdp=force_stereo_down(answer.sdp), type=answer.type)
                await pc.setLocalDescription(answer)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Session negotiation failed")
                self._session._handle_state_change(
                    StateChangeEvent(SessionStates.FAILED, f"negotiation failed: {exc}"), SessionStates.FAILED
                )
                return
            local = pc.localDescription
            if local is None:  # pragma: no cover - defensive guard
                logger.error("Peer connection did not provide a local description")
                return
            logger.debug("Sending answer to mixer")
            self._send(
                {
                    "type": "answer",
                    "sdp": {"type": local.type, "sdp": local.sdp},
                    "uuid": self._session.session_id,
                }
            )

    async def _add_candidate(self, pc: Any, candidate: RTCIceCandidate) -> None:
        async with self._lock:
            if pc is not self._pc:
                return
            try:
                await pc.addIceCandidate(candidate)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Error adding remote ICE candidate: %s", exc)
                return
            logger.debug("Added remote ICE candidate")

    # ------------------------------ peer connection ------------------------
    def _create_peer_connection(self, configuration: Any) -> Any:
        pc = self._peer_connection_factory(configuration=configuration)
        self._pc = pc
        for sender in pc.getSenders():
            sender.replaceTrack(None)
        self._audio_senders = []
        self._video_senders = []

        @pc.on("iceconnectionstatechange")
        def _on_ice_state_change() -> None:
            if pc is not self._pc and pc.iceConnectionState != "closed":
                return
            self._report_ice_state(pc.iceConnectionState)

        @pc.on("datachannel")
        def _on_datachannel(channel: Any) -> None:
            self._session._on_data_channel(channel)

        @pc.on("track")
        async def _on_track(track: Any) -> None:
            await self._session._on_track(track)

        @pc.on("icecandidate")
        def _on_icecandidate(candidate: Any) -> None:
            if not candidate:
                logger.debug("End of local ICE candidates")
                return
            self._send({"ice": candidate_to_message(candidate), "uuid": self._session.session_id})

        @pc.on("negotiationneeded")
        def _on_negotiationneeded() -> None:
            self._request_renegotiation()

        @pc.on("signalingstatechange")
        def _on_signalingstatechange() -> None:
            logger.debug("Signaling state changed: %s", pc.signalingState)

        if self._audio_input is not None:
            self.add_audio_input_stream(self._audio_input)
        if self._video_input is not None:
            self.add_video_input_stream(self._video_input)
        self._stats.resume()
        logger.info("Created peer connection for session %s", self._session.session_id)
        return pc

    def _report_ice_state(self, value: str) -> None:
        state = SessionStates.from_ice_state(value)
        if state is None:
            logger.debug("Ignoring unknown ICE connection state %s", value)
            return
        if state in (SessionStates.CONNECTED, SessionStates.COMPLETED) and self._signaling is not None:
            logger.info("Session fully connected; signaling loss no longer aborts it")
            self._signaling.remove_state_change_handler(self._cancel_open_on_signaling_loss)
        self._session._handle_state_change(StateChangeEvent(state), state)

    def _request_renegotiation(self) -> None:
        pc = self._pc
        if self._signaling is None or pc is None or pc.signalingState != "stable":
            return
        logger.debug("Requesting renegotiation")
        self._send({"renegotiate": "please", "uuid": self._session.session_id})

    # ------------------------------ local input ----------------------------
    def add_audio_input_stream(self, stream: "MediaStream | None") -> bool:
        """Send the audio tracks of ``stream``; ``None`` mutes without renegotiating."""

        self._audio_input = stream
        pc = self._pc
        if stream is None:
            for index, sender in enumerate(self._audio_senders):
                logger.debug("Muting audio sender #%d", index)
                sender.replaceTrack(None)
            return True
        if pc is None:
            logger.debug("Storing audio input until the peer connection exists")
            return True
        tracks = stream.audio_tracks
        for index, sender in enumerate(self._audio_senders):
            sender.replaceTrack(tracks[index] if index < len(tracks) else None)
        added = False
        for track in tracks[len(self._audio_senders) :]:
            logger.debug("Adding local audio track #%d", len(self._audio_senders))
            self._audio_senders.append(pc.addTrack(track))
            added = True
        if added:
            self._renegotiate_after_add(pc)
        return True

    def add_video_input_stream(self, stream: "MediaStream | None") -> bool:
        """Send the first video track of ``stream``; only one outbound video track is supported."""

        self._video_input = stream
        pc = self._pc
        if stream is None:
            for sender in self._video_senders:
                sender.replaceTrack(None)
            return True
        if pc is None:
            logger.debug("Storing video input until the peer connection exists")
            return True
        tracks = stream.video_tracks
        if not tracks:
            logger.warning("Video input stream has no video track")
            return False
        if self._video_senders:
            self._video_senders[0].replaceTrack(tracks[0])
        else:
            self._video_senders.append(pc.addTrack(tracks[0]))
            self._renegotiate_after_add(pc)
        return True

    def _renegotiate_after_add(self, pc: Any) -> None:
        # aiortc does not emit negotiationneeded; ask explicitly once negotiated
        if pc.remoteDescription is not None:
            self._request_renegotiation()

    # ------------------------------ stats ----------------------------------
    def add_stats_observer(self, observer: StatsObserver) -> None:
        self._stats.add_observer(observer)

    def remove_stats_observer(self, observer: StatsObserver) -> None:
        self._stats.remove_observer(observer)

    async def get_stats(self) -> Any:
        pc = self._pc
        if pc is None:
            return []
        return await pc.getStats()

    # ----------------------------- implementation --------------------------
    def _send(self, payload: Mapping[str, Any]) -> None:
        signaling = self._signaling
        if signaling is None:
            logger.warning("No signaling channel; dropping %s", next(iter(payload), "message"))
            return
        try:
            signaling.send(json.dumps(payload))
        except Exception as exc:
            logger.error("Failed to send signaling message: %s", exc)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


__all__ = [
    "NegotiationEngine",
    "candidate_from_message",
    "candidate_to_message",
    "force_bitrate_up",
    "force_stereo_down",
    "opus_payload_types",
]
