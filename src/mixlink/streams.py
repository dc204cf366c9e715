"""Remote and local media stream bookkeeping for a session."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterable, Protocol

from aiortc.mediastreams import MediaStreamTrack

if TYPE_CHECKING:  # pragma: no cover - imported for type checkers only
    from .commands import CommandController


logger = logging.getLogger(__name__)


VIDEO_READY = "ready"
VIDEO_OVER = "over"


class MediaSink(Protocol):
    """Consumer of remote tracks, e.g. ``aiortc.contrib.media.MediaRecorder``."""

    def addTrack(self, track: MediaStreamTrack) -> None:
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


class MediaStream:
    """An ordered group of media tracks delivered or captured together."""

    def __init__(self, tracks: Iterable[MediaStreamTrack] = ()) -> None:
        self._tracks: list[MediaStreamTrack] = list(tracks)

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        return list(self._tracks)

    @property
    def audio_tracks(self) -> list[MediaStreamTrack]:
        return [track for track in self._tracks if track.kind == "audio"]

    @property
    def video_tracks(self) -> list[MediaStreamTrack]:
        return [track for track in self._tracks if track.kind == "video"]

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def stop(self) -> None:
        for track in self._tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - defensive logging
                logger.debug("Ignoring error while stopping track", exc_info=True)

    def __bool__(self) -> bool:
        return bool(self._tracks)

    def __len__(self) -> int:
        return len(self._tracks)

    def __repr__(self) -> str:
        kinds = ", ".join(track.kind for track in self._tracks)
        return f"MediaStream([{kinds}])"


StreamChangeHandler = Callable[["MediaStream | None"], None]
VideoStateHandler = Callable[[str], None]


def _log_video_state(state: str) -> None:
    logger.info("Video stream state changed: %s", state)


class StreamController:
    """Track the remote media streams, their sinks and the local inputs."""

    def __init__(self, command_controller: "CommandController") -> None:
        self._command_controller = command_controller
        self._audio_stream: MediaStream | None = None
        self._video_stream: MediaStream | None = None
        self._audio_sink: MediaSink | None = None
        self._video_sink: MediaSink | None = None
        self._on_video_state_change: VideoStateHandler = _log_video_state
        self._input_audio: MediaStream | None = None
        self._input_video: MediaStream | None = None
        self._stereo = False
        self._on_input_audio_change: StreamChangeHandler | None = None
        self._on_input_video_change: StreamChangeHandler | None = None

    # ------------------------------ remote video ---------------------------
    @property
    def video_stream(self) -> MediaStream | None:
        return self._video_stream

    @property
    def video_sink(self) -> MediaSink | None:
        return self._video_sink

    async def set_video_sink(
        self,
        sink: MediaSink | None,
        on_state_change: VideoStateHandler | None = None,
    ) -> None:
        """Attach ``sink``; it is bound immediately when a video stream exists."""

        self._video_sink = sink
        if sink is not None and self._video_stream is not None:
            await self._bind(sink, self._video_stream.video_tracks)
        self.set_video_state_change_handler(on_state_change)

    def set_video_state_change_handler(self, handler: VideoStateHandler | None) -> None:
        if handler is not None:
            self._on_video_state_change = handler

    async def _set_video_stream(self, stream: MediaStream | None) -> None:
        self._video_stream = stream
        if stream is not None and self._video_sink is not None:
            await self._bind(self._video_sink, stream.video_tracks)

    def _notify_video_state(self, state: str) -> None:
        try:
            self._on_video_state_change(state)
        except Exception:
            logger.exception("Video state handler raised an exception")

    def show_video_dashboard(self, enabled: bool) -> None:
        self._command_controller.queue_command("video.showDashboard", {"enabled": bool(enabled)})

    def show_video_cursor(self, enabled: bool) -> None:
        self._command_controller.queue_command("video.showCursor", {"enabled": bool(enabled)})

    # ------------------------------ remote audio ---------------------------
    @property
    def audio_stream(self) -> MediaStream | None:
        return self._audio_stream

    @property
    def audio_sink(self) -> MediaSink | None:
        return self._audio_sink

    async def set_audio_sink(self, sink: MediaSink | None) -> None:
        self._audio_sink = sink
        if sink is not None and self._audio_stream is not None:
            await self._bind(sink, self._audio_stream.audio_tracks)

    async def _set_audio_stream(self, stream: MediaStream | None) -> None:
        self._audio_stream = stream
        if stream is not None and self._audio_sink is not None:
            await self._bind(self._audio_sink, stream.audio_tracks)

    # ------------------------------ local input ----------------------------
    @property
    def input_audio(self) -> MediaStream | None:
        return self._input_audio

    @property
    def input_video(self) -> MediaStream | None:
        return self._input_video

    def set_input_audio(self, stream: MediaStream | None, stereo: bool = False) -> None:
        """Use ``stream`` as the microphone input; ``None`` mutes the senders."""

        self._input_audio = stream
        self._stereo = bool(stereo)
        if self._on_input_audio_change is not None:
            self._on_input_audio_change(stream)

    def set_input_audio_change_handler(self, handler: StreamChangeHandler | None) -> None:
        if handler is not None:
            self._on_input_audio_change = handler

    def set_input_video(self, stream: MediaStream | None) -> None:
        self._input_video = stream
        if self._on_input_video_change is not None:
            self._on_input_video_change(stream)

    def set_input_video_change_handler(self, handler: StreamChangeHandler | None) -> None:
        if handler is not None:
            self._on_input_video_change = handler

    def is_stereo_input(self) -> bool:
        return self._stereo

    # ------------------------------ lifecycle ------------------------------
    async def stop(self) -> None:
        """Stop remote streams and release the sinks.

        Local input streams are left running; their owner stops them.
        """

        logger.debug("Stopping remote streams")
        video_stream, self._video_stream = self._video_stream, None
        video_sink, self._video_sink = self._video_sink, None
        if video_stream is not None:
            video_stream.stop()
        if video_sink is not None:
            await self._release(video_sink)
            # "over" only pairs with a video that was actually shown
            if video_stream is not None:
                self._notify_video_state(VIDEO_OVER)
        if self._audio_stream is not None:
            self._audio_stream.stop()
            self._audio_stream = None
        audio_sink = self._audio_sink
        if audio_sink is not None:
            self._audio_sink = None
            await self._release(audio_sink)

    # ----------------------------- implementation --------------------------
    @staticmethod
    async def _bind(sink: MediaSink, tracks: list[MediaStreamTrack]) -> None:
        if not tracks:
            return
        for track in tracks:
            sink.addTrack(track)
        try:
            await sink.start()
        except Exception:
            logger.exception("Media sink failed to start")

    @staticmethod
    async def _release(sink: MediaSink) -> None:
        try:
            await sink.stop()
        except Exception:  # pragma: no cover - defensive logging
            logger.debug("Ignoring error while stopping media sink", exc_info=True)


__all__ = [
    "MediaSink",
    "MediaStream",
    "StreamController",
    "VIDEO_OVER",
    "VIDEO_READY",
]
