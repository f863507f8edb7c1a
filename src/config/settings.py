"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")

    # Identity / relay
    local_id: str | None = Field(
        default=None,
        description="Endpoint identity announced to the relay. Required before any signaling.",
    )
    relay_url: str = Field(
        default="ws://localhost:8765",
        description="WebSocket URL of the signaling relay.",
    )
    signaling_reconnect_delay: float = Field(
        default=2.0,
        ge=0.0,
        description="Seconds to wait before reconnecting a dropped relay socket (0 disables).",
    )

    # ICE
    ice_servers: list[str] = Field(
        default_factory=lambda: [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
        ],
        description="STUN/TURN URLs handed to the peer connection.",
    )
    turn_username: str | None = Field(default=None)
    turn_credential: str | None = Field(default=None)

    # Call policy
    ringing_timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Seconds an outgoing or incoming call may ring before it is ended.",
    )
    announce_calls: bool = Field(
        default=False,
        description="If true, send an incoming-call notice ahead of each offer.",
    )
    auto_answer: bool = Field(default=False)
    early_candidate_limit: int = Field(
        default=64,
        ge=0,
        description="Max ICE candidates held per sender before their offer arrives.",
    )

    # Media capture
    enable_audio: bool = Field(default=True)
    enable_video: bool = Field(default=True)
    audio_device: str | None = Field(
        default=None,
        description="Capture device for audio, e.g. 'default' with audio_format 'pulse'.",
    )
    video_device: str | None = Field(
        default=None,
        description="Capture device for video, e.g. '/dev/video0' with video_format 'v4l2'.",
    )
    audio_format: str | None = Field(default=None)
    video_format: str | None = Field(default=None)

    @field_validator("local_id")
    @classmethod
    def strip_local_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("local_id may not be empty.")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
