from __future__ import annotations

import numpy as np
from aiortc import MediaStreamTrack
from av import AudioFrame, VideoFrame


def silence_like(frame: AudioFrame) -> AudioFrame:
    """Return an all-zero audio frame with the timing of ``frame``."""

    samples = np.zeros_like(frame.to_ndarray())
    silent = AudioFrame.from_ndarray(samples, format=frame.format.name, layout=frame.layout.name)
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    silent.time_base = frame.time_base
    return silent


def black_like(frame: VideoFrame) -> VideoFrame:
    """Return a black video frame with the size and timing of ``frame``."""

    pixels = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
    black = VideoFrame.from_ndarray(pixels, format="rgb24")
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class ToggleableTrack(MediaStreamTrack):
    """Wraps a local capture track so it can be muted without renegotiation.

    A disabled track keeps its timing and keeps flowing, but carries silence
    (audio) or black frames (video) instead of the captured content.
    """

    def __init__(self, source: MediaStreamTrack, *, enabled: bool = True) -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = enabled

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return silence_like(frame)
        return black_like(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()
