from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from calling.errors import CallError


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    OFFERED = "offered"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    ENDING = "ending"


class CallRole(str, Enum):
    CALLER = "caller"
    CALLEE = "callee"


@dataclass(frozen=True, slots=True)
class StateChanged:
    previous: CallState
    current: CallState
    peer_id: str | None


@dataclass(frozen=True, slots=True)
class CallRequested:
    """A remote endpoint announced a call ahead of its offer."""

    peer_id: str


@dataclass(frozen=True, slots=True)
class IncomingCall:
    peer_id: str


@dataclass(frozen=True, slots=True)
class RemoteTrackAvailable:
    peer_id: str
    kind: str
    track: Any


@dataclass(frozen=True, slots=True)
class CallEnded:
    peer_id: str | None
    by_remote: bool


@dataclass(frozen=True, slots=True)
class CallFailed:
    peer_id: str | None
    error: CallError

    @property
    def condition(self) -> str:
        return self.error.condition


CallEvent = StateChanged | CallRequested | IncomingCall | RemoteTrackAvailable | CallEnded | CallFailed
