from __future__ import annotations

import logging

from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer

from calling.errors import MediaUnavailableError
from config.settings import Settings
from media.tracks import ToggleableTrack

LOGGER = logging.getLogger(__name__)


class MediaSource:
    """Owns the locally captured audio/video tracks.

    Tracks are opened once on the first :meth:`acquire` and reused for every
    call. Without a configured capture device the source falls back to the
    synthetic silence / test-pattern tracks shipped with aiortc.
    """

    def __init__(self, settings: Settings, *, player_factory=MediaPlayer) -> None:
        self._settings = settings
        self._player_factory = player_factory
        self._players: list[MediaPlayer] = []
        self._tracks: list[ToggleableTrack] | None = None
        self._audio_muted = False
        self._video_muted = False

    @property
    def acquired(self) -> bool:
        return self._tracks is not None

    @property
    def tracks(self) -> list[ToggleableTrack]:
        return list(self._tracks or [])

    @property
    def audio_muted(self) -> bool:
        return self._audio_muted

    @property
    def video_muted(self) -> bool:
        return self._video_muted

    async def acquire(self) -> list[ToggleableTrack]:
        if self._tracks is not None:
            return list(self._tracks)

        settings = self._settings
        tracks: list[ToggleableTrack] = []
        try:
            if settings.enable_audio:
                source = self._open(settings.audio_device, settings.audio_format, "audio")
                tracks.append(ToggleableTrack(source, enabled=not self._audio_muted))
            if settings.enable_video:
                source = self._open(settings.video_device, settings.video_format, "video")
                tracks.append(ToggleableTrack(source, enabled=not self._video_muted))
        except MediaUnavailableError:
            self._release(tracks)
            raise
        except Exception as exc:
            self._release(tracks)
            LOGGER.exception("Capture device acquisition failed")
            raise MediaUnavailableError(f"Cannot open capture device: {exc}") from exc

        if not tracks:
            raise MediaUnavailableError("Both audio and video capture are disabled.")

        LOGGER.info("Acquired local media: %s", ", ".join(track.kind for track in tracks))
        self._tracks = tracks
        return list(tracks)

    def _open(self, device: str | None, fmt: str | None, kind: str) -> MediaStreamTrack:
        if not device:
            return AudioStreamTrack() if kind == "audio" else VideoStreamTrack()

        player = self._player_factory(device, format=fmt)
        self._players.append(player)
        track = player.audio if kind == "audio" else player.video
        if track is None:
            raise MediaUnavailableError(f"Device {device!r} provides no {kind} stream.")
        return track

    def toggle_audio(self) -> bool:
        """Flip the audio mute flag; returns True when audio is now muted."""

        self._audio_muted = not self._audio_muted
        self._apply("audio", not self._audio_muted)
        return self._audio_muted

    def toggle_video(self) -> bool:
        """Flip the video mute flag; returns True when video is now muted."""

        self._video_muted = not self._video_muted
        self._apply("video", not self._video_muted)
        return self._video_muted

    def _apply(self, kind: str, enabled: bool) -> None:
        for track in self._tracks or []:
            if track.kind == kind:
                track.enabled = enabled

    def stop(self) -> None:
        self._release(self._tracks or [])
        self._tracks = None

    def _release(self, tracks: list[ToggleableTrack]) -> None:
        for track in tracks:
            track.stop()
        for player in self._players:
            for track in (player.audio, player.video):
                if track is not None:
                    track.stop()
        self._players.clear()
