# peercall/media.py
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass

import numpy as np
from aiortc import AudioStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaStreamError
from av.audio.frame import AudioFrame
from av.error import FFmpegError
from av.video.frame import VideoFrame

from config import (
    AUDIO_SAMPLE_RATE,
    AUDIO_TIME_BASE,
    MEDIA_FORMAT,
    MEDIA_OPTIONS,
    MEDIA_SOURCE,
    SAMPLES_PER_FRAME,
    TONE_AMPLITUDE,
    TONE_FREQUENCY_HZ,
    VIDEO_HEIGHT,
    VIDEO_WIDTH,
)
from .exceptions import MediaAccessError

LOGGER = logging.getLogger(__name__)

SYNTHETIC_SOURCE = "synthetic"

# White, yellow, cyan, green, magenta, red, blue
COLOR_BARS = np.array(
    [
        [255, 255, 255],
        [255, 255, 0],
        [0, 255, 255],
        [0, 255, 0],
        [255, 0, 255],
        [255, 0, 0],
        [0, 0, 255],
    ],
    dtype=np.uint8,
)


class ToneAudioTrack(AudioStreamTrack):
    """Mono sine tone, paced in real time like a microphone."""
    kind = "audio"

    def __init__(self, frequency=TONE_FREQUENCY_HZ):
        super().__init__()
        self.frequency = frequency
        self.samplerate = AUDIO_SAMPLE_RATE
        self.samples_per_frame = SAMPLES_PER_FRAME
        self._start_time = time.time()
        self._timestamp = 0

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError

        wait_until = self._start_time + (self._timestamp + self.samples_per_frame) / self.samplerate
        await asyncio.sleep(max(0, wait_until - time.time()))

        t = (np.arange(self.samples_per_frame) + self._timestamp) / self.samplerate
        wave = TONE_AMPLITUDE * np.iinfo(np.int16).max * np.sin(2 * np.pi * self.frequency * t)
        frame = AudioFrame.from_ndarray(
            wave.astype(np.int16).reshape(1, -1),
            format='s16', layout='mono'
        )
        frame.pts = self._timestamp
        frame.sample_rate = self.samplerate
        frame.time_base = AUDIO_TIME_BASE
        self._timestamp += frame.samples
        return frame


class ColorBarsVideoTrack(VideoStreamTrack):
    """Scrolling SMPTE-style colour bars."""
    kind = "video"

    def __init__(self, width=VIDEO_WIDTH, height=VIDEO_HEIGHT):
        super().__init__()
        columns = (np.arange(width) * len(COLOR_BARS)) // width
        self._image = np.ascontiguousarray(np.tile(COLOR_BARS[columns], (height, 1, 1)))
        self._frames = 0

    async def recv(self):
        pts, time_base = await self.next_timestamp()
        image = np.roll(self._image, self._frames * 4, axis=1)
        self._frames += 1
        frame = VideoFrame.from_ndarray(image, format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class MediaStream:
    """A group of tracks captured (or received) together."""

    def __init__(self, tracks=None, player=None):
        self.id = str(uuid.uuid4())
        self.player = player
        self._tracks = []
        for track in tracks or []:
            self.add_track(track)

    def add_track(self, track):
        if track not in self._tracks:
            self._tracks.append(track)

    def get_tracks(self):
        return list(self._tracks)

    def get_audio_tracks(self):
        return [t for t in self._tracks if t.kind == "audio"]

    def get_video_tracks(self):
        return [t for t in self._tracks if t.kind == "video"]

    @property
    def active(self):
        return any(t.readyState == "live" for t in self._tracks)

    def stop(self):
        # Stopping the last player track also stops the player's decode thread
        for track in self._tracks:
            track.stop()

    def __repr__(self):
        kinds = ",".join(t.kind for t in self._tracks)
        return f"<MediaStream {self.id[:8]} [{kinds}]>"


@dataclass
class MediaConstraints:
    audio: bool = True
    video: bool = True


class MediaSourceManager:
    def __init__(self, source=MEDIA_SOURCE, format=MEDIA_FORMAT, options=None):
        self.source = source
        self.format = format
        self.options = MEDIA_OPTIONS if options is None else options

    async def acquire(self, constraints=None):
        """
        Opens the configured capture source and returns a MediaStream holding
        one track per requested kind. Raises MediaAccessError when the source
        cannot be opened or lacks a requested kind.
        """
        constraints = constraints or MediaConstraints()
        if not (constraints.audio or constraints.video):
            raise MediaAccessError("No audio or video was requested.")

        if self.source == SYNTHETIC_SOURCE:
            stream = self._open_synthetic(constraints)
        else:
            stream = await self._open_player(constraints)

        LOGGER.info(f"Acquired local media {stream} from '{self.source}'")
        return stream

    def release(self, stream):
        if stream is None or not stream.active:
            return
        stream.stop()
        LOGGER.debug(f"Released local media {stream}")

    def _open_synthetic(self, constraints):
        tracks = []
        if constraints.audio:
            tracks.append(ToneAudioTrack())
        if constraints.video:
            tracks.append(ColorBarsVideoTrack())
        return MediaStream(tracks)

    async def _open_player(self, constraints):
        try:
            # Opening a capture device blocks inside FFmpeg
            player = await asyncio.to_thread(
                MediaPlayer, self.source, format=self.format, options=self.options
            )
        except (FFmpegError, OSError, ValueError) as e:
            raise MediaAccessError(f"Failed to access camera/microphone '{self.source}': {e}") from e

        tracks = []
        missing = []
        if constraints.audio:
            if player.audio:
                tracks.append(player.audio)
            else:
                missing.append("audio")
        if constraints.video:
            if player.video:
                tracks.append(player.video)
            else:
                missing.append("video")

        if missing:
            for track in tracks:
                track.stop()
            raise MediaAccessError(f"No {' or '.join(missing)} device available at '{self.source}'.")

        return MediaStream(tracks, player=player)
