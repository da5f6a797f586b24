"""Local capture: device acquisition and mutable audio/video tracks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

import av
from av.error import FFmpegError
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

from peercall.errors import MediaAccessError

logger = logging.getLogger(__name__)

AUDIO = "audio"
VIDEO = "video"

VIDEO_OPTIONS = {"framerate": "30", "video_size": "1280x720"}

# Limited-range YUV black: Y=16, U=V=128
_BLACK_LUMA = 16
_BLACK_CHROMA = 128


def _silence(frame: av.AudioFrame) -> av.AudioFrame:
    for plane in frame.planes:
        plane.update(bytes(plane.buffer_size))
    return frame


def _black(frame: av.VideoFrame) -> av.VideoFrame:
    blank = av.VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    for i, plane in enumerate(blank.planes):
        value = _BLACK_LUMA if i == 0 else _BLACK_CHROMA
        plane.update(bytes([value]) * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleTrack(MediaStreamTrack):
    """Relays a capture track, blanking frames while disabled.

    Disabling keeps frames flowing at the source rate so the negotiated
    transport is untouched; only the content changes.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if self.kind == AUDIO:
            return _silence(frame)
        return _black(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class LocalMedia:
    """The local media handle of a call; peers attach relay proxies of it."""

    def __init__(self, tracks: Iterable[Any]) -> None:
        self.tracks = list(tracks)
        self._enabled = {AUDIO: True, VIDEO: True}
        self.released = False
        self._relay = MediaRelay()

    def track(self, kind: str) -> Any | None:
        for track in self.tracks:
            if track.kind == kind:
                return track
        return None

    def subscribe(self) -> list[Any]:
        """One relay proxy per local track, for a single peer connection.

        Each proxy gets its own frame queue, so peer connections never read
        from the same source track. Toggles on the source reach every proxy.
        """
        return [self._relay.subscribe(track) for track in self.tracks]

    @property
    def audio_enabled(self) -> bool:
        return self._enabled[AUDIO]

    @property
    def video_enabled(self) -> bool:
        return self._enabled[VIDEO]

    def toggle(self, kind: str) -> bool:
        """Flip the enable flag of *kind*; no-op without a live track of that kind."""
        track = self.track(kind)
        if track is None or self.released:
            logger.debug("No %s track, toggle ignored", kind)
            return self._enabled[kind]
        self._enabled[kind] = not self._enabled[kind]
        track.enabled = self._enabled[kind]
        logger.info("Local %s %s", kind, "enabled" if track.enabled else "disabled")
        return self._enabled[kind]

    def release(self) -> None:
        """Stop every track. Safe to call more than once."""
        if self.released:
            return
        self.released = True
        for track in self.tracks:
            track.stop()
        logger.info("Released local media (%d track(s))", len(self.tracks))


class MediaAcquisition:
    """Opens capture devices through ffmpeg (aiortc ``MediaPlayer``)."""

    def __init__(
        self,
        *,
        audio_device: str = "default",
        audio_format: str = "pulse",
        video_device: str = "/dev/video0",
        video_format: str = "v4l2",
    ) -> None:
        self._audio = (audio_device, audio_format)
        self._video = (video_device, video_format)

    async def acquire(self, want_audio: bool = True, want_video: bool = True) -> LocalMedia:
        if not (want_audio or want_video):
            raise MediaAccessError("no media kind requested")
        loop = asyncio.get_running_loop()
        # Device open blocks on the driver
        tracks = await loop.run_in_executor(None, self._open, want_audio, want_video)
        return LocalMedia(ToggleTrack(t) for t in tracks)

    def _open(self, want_audio: bool, want_video: bool) -> list[MediaStreamTrack]:
        tracks: list[MediaStreamTrack] = []
        try:
            if want_audio:
                device, fmt = self._audio
                player = MediaPlayer(device, format=fmt)
                if player.audio is None:
                    raise MediaAccessError(f"no audio stream on {device}")
                tracks.append(player.audio)
            if want_video:
                device, fmt = self._video
                player = MediaPlayer(device, format=fmt, options=VIDEO_OPTIONS)
                if player.video is None:
                    raise MediaAccessError(f"no video stream on {device}")
                tracks.append(player.video)
        except (FFmpegError, OSError) as exc:
            for track in tracks:
                track.stop()
            raise MediaAccessError(str(exc)) from exc
        except MediaAccessError:
            for track in tracks:
                track.stop()
            raise
        logger.info("Acquired local media: %s", ", ".join(t.kind for t in tracks))
        return tracks
