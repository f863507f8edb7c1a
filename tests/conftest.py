from __future__ import annotations

import asyncio
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from aiortc import RTCSessionDescription  # noqa: E402

from calling.errors import SignalingUnavailableError  # noqa: E402
from calling.schemas import IceCandidatePayload, SessionDescriptionPayload, SignalingEnvelope  # noqa: E402
from calling.session import CallSession  # noqa: E402
from config.settings import Settings  # noqa: E402
from media.source import MediaSource  # noqa: E402
from signaling.channel import SignalingChannel  # noqa: E402

OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 127.0.0.1\r\ns=offer\r\n"
ANSWER_SDP = "v=0\r\no=- 2 2 IN IP4 127.0.0.1\r\ns=answer\r\n"


def host_candidate(n: int) -> str:
    return f"candidate:{n} 1 udp 2130706431 192.0.2.{n} {50000 + n} typ host"


class FakePeerConnection:
    """Records what the session does to its peer connection.

    ``gates`` lets a test hold an operation suspended until it sets the event;
    ``fail_on`` makes the named operation raise.
    """

    def __init__(self, *, fail_on: set[str] | None = None) -> None:
        self.handlers: dict[str, list] = {}
        self.tracks: list = []
        self.added_candidates: list = []
        self.localDescription: RTCSessionDescription | None = None
        self.remoteDescription: RTCSessionDescription | None = None
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.close_calls = 0
        self.fail_on = fail_on or set()
        self.gates: dict[str, asyncio.Event] = {}

    def on(self, event: str, handler=None):
        def register(fn):
            self.handlers.setdefault(event, []).append(fn)
            return fn

        if handler is not None:
            return register(handler)
        return register

    def emit(self, event: str, *args) -> None:
        for fn in self.handlers.get(event, []):
            fn(*args)

    def set_connection_state(self, value: str) -> None:
        self.connectionState = value
        self.emit("connectionstatechange")

    def addTrack(self, track) -> None:
        self.tracks.append(track)

    async def _step(self, name: str) -> None:
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    async def createOffer(self) -> RTCSessionDescription:
        await self._step("createOffer")
        return RTCSessionDescription(sdp=OFFER_SDP, type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        await self._step("createAnswer")
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        await self._step("setLocalDescription")
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        await self._step("setRemoteDescription")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate) -> None:
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        self.close_calls += 1
        self.connectionState = "closed"


class FakeChannel(SignalingChannel):
    def __init__(self) -> None:
        self.sent: list[SignalingEnvelope] = []
        self.handlers: list = []
        self.relay_url: str | None = None
        self.disconnected = False
        self.fail_sends = False

    async def connect(self, relay_url: str) -> None:
        self.relay_url = relay_url

    def on_message(self, handler) -> None:
        self.handlers.append(handler)

    async def send(self, envelope: SignalingEnvelope) -> None:
        if self.disconnected:
            return
        if self.fail_sends:
            raise SignalingUnavailableError("relay down")
        self.sent.append(envelope)

    async def disconnect(self) -> None:
        self.disconnected = True

    def deliver(self, envelope: SignalingEnvelope) -> None:
        for handler in self.handlers:
            handler(envelope)

    def sent_types(self) -> list[str]:
        return [envelope.type for envelope in self.sent]


class FakeSink:
    def __init__(self) -> None:
        self.tracks: list = []
        self.started = 0
        self.stopped = 0

    def addTrack(self, track) -> None:
        self.tracks.append(track)

    async def start(self) -> None:
        self.started += 1

    async def stop(self) -> None:
        self.stopped += 1


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind


class Harness:
    """A call session for ``local_id`` plus every fake it talks to."""

    def __init__(self, local_id: str = "alice", *, settings: Settings | None = None, roster=None) -> None:
        self.settings = settings or make_settings(local_id)
        self.channel = FakeChannel()
        self.media = MediaSource(self.settings)
        self.pcs: list[FakePeerConnection] = []
        self.sinks: list[FakeSink] = []
        self.events: list = []
        self.fail_on: set[str] = set()
        self.session = CallSession(
            local_id,
            self.channel,
            self.media,
            settings=self.settings,
            roster=roster,
            peer_factory=self._new_pc,
            sink_factory=self._new_sink,
        )
        self.session.add_listener(self.events.append)

    def _new_pc(self) -> FakePeerConnection:
        pc = FakePeerConnection(fail_on=set(self.fail_on))
        self.pcs.append(pc)
        return pc

    def _new_sink(self) -> FakeSink:
        sink = FakeSink()
        self.sinks.append(sink)
        return sink

    @property
    def pc(self) -> FakePeerConnection:
        return self.pcs[-1]

    def events_of(self, kind: type) -> list:
        return [event for event in self.events if isinstance(event, kind)]


def make_settings(local_id: str = "alice", **overrides) -> Settings:
    return Settings(_env_file=None, local_id=local_id, **overrides)


def offer_from(sender: str, to: str = "alice", sdp: str = OFFER_SDP) -> SignalingEnvelope:
    return SignalingEnvelope(
        type="offer",
        sender=sender,
        to=to,
        offer=SessionDescriptionPayload(sdp=sdp, type="offer"),
    )


def answer_from(sender: str, to: str = "alice") -> SignalingEnvelope:
    return SignalingEnvelope(
        type="answer",
        sender=sender,
        to=to,
        answer=SessionDescriptionPayload(sdp=ANSWER_SDP, type="answer"),
    )


def candidate_from(sender: str, n: int, to: str = "alice") -> SignalingEnvelope:
    return SignalingEnvelope(
        type="ice-candidate",
        sender=sender,
        to=to,
        candidate=IceCandidatePayload(candidate=host_candidate(n), sdpMid="0", sdpMLineIndex=0),
    )


def control_from(kind: str, sender: str, to: str = "alice", reason: str | None = None) -> SignalingEnvelope:
    return SignalingEnvelope(type=kind, sender=sender, to=to, reason=reason)


def run(coro):
    return asyncio.run(coro)
