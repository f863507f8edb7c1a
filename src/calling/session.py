"""Call-negotiation state machine.

One :class:`CallSession` drives at most one call at a time. Two event sources
feed it: the remote peer through signaling envelopes, and the local user
through the command methods. Peer-connection callbacks and ringing timers are
posted into the same inbox as envelopes and handled one at a time by
:meth:`CallSession.run`.

Every asynchronous step captures the session generation before its first
await and re-checks it afterwards; teardown bumps the generation, so work
resumed after a hang-up becomes a no-op instead of touching the next call.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from aiortc.contrib.media import MediaBlackhole

from calling.candidates import CandidateBuffer
from calling.errors import (
    BusyLocallyError,
    BusyRemotelyError,
    CallError,
    CallRejectedError,
    MediaUnavailableError,
    NegotiationFailedError,
    PeerDisconnectedError,
    PeerUnreachableError,
    SignalingUnavailableError,
)
from calling.peer import (
    candidate_from_payload,
    candidate_to_payload,
    create_peer_connection,
    description_from_payload,
    description_to_payload,
)
from calling.presence import PresenceRoster
from calling.schemas import (
    REJECT_BUSY,
    REJECT_DECLINED,
    REJECT_MEDIA_UNAVAILABLE,
    IceCandidatePayload,
    SignalingEnvelope,
)
from calling.states import (
    CallEnded,
    CallEvent,
    CallFailed,
    CallRequested,
    CallRole,
    CallState,
    IncomingCall,
    RemoteTrackAvailable,
    StateChanged,
)
from config.settings import Settings
from media.source import MediaSource
from signaling.channel import SignalingChannel

LOGGER = logging.getLogger(__name__)

Listener = Callable[[CallEvent], Any]

_LOST_CONNECTIVITY = {"failed", "disconnected"}

# Distinct senders whose candidates are held while idle.
_EARLY_SENDER_LIMIT = 16


@dataclass(frozen=True, slots=True)
class _PeerEvent:
    """A peer-connection callback or timer, tagged with its session generation."""

    generation: int
    kind: str
    payload: Any = None


class _Superseded(Exception):
    """The session was torn down while an operation was suspended."""


class CallSession:
    def __init__(
        self,
        local_id: str,
        channel: SignalingChannel,
        media: MediaSource,
        *,
        settings: Settings,
        roster: PresenceRoster | None = None,
        peer_factory: Callable[[], Any] | None = None,
        sink_factory: Callable[[], Any] = MediaBlackhole,
    ) -> None:
        if not local_id or not local_id.strip():
            raise ValueError("A call session needs a local identity.")

        self._local_id = local_id
        self._channel_ref = weakref.ref(channel)
        self._media = media
        self._settings = settings
        self._roster = roster
        self._peer_factory = peer_factory or (lambda: create_peer_connection(settings))
        self._sink_factory = sink_factory

        self._state = CallState.IDLE
        self._role: CallRole | None = None
        self._peer_id: str | None = None
        self._generation = 0
        self._pc: Any = None
        self._sink: Any = None
        self._remote_offer_sdp: str | None = None
        self._buffer: CandidateBuffer[IceCandidatePayload] = CandidateBuffer(self._apply_remote_candidate)
        self._early_candidates: dict[str, list[IceCandidatePayload]] = {}
        self._ended_peer_id: str | None = None
        self._ring_timer: asyncio.Task | None = None

        self._inbox: asyncio.Queue[SignalingEnvelope | _PeerEvent] = asyncio.Queue()
        self._listeners: list[Listener] = []
        self._listener_tasks: set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Observable state

    @property
    def local_id(self) -> str:
        return self._local_id

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def role(self) -> CallRole | None:
        return self._role

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def peer_connection(self) -> Any:
        return self._pc

    @property
    def pending_candidates(self) -> int:
        return len(self._buffer)

    @property
    def audio_muted(self) -> bool:
        return self._media.audio_muted

    @property
    def video_muted(self) -> bool:
        return self._media.video_muted

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: CallEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception:
                LOGGER.exception("Call listener failed for %s", type(event).__name__)

    def _listener_done(self, task: asyncio.Future) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Call listener failed", exc_info=exc)

    def _set_state(self, state: CallState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        LOGGER.info("Call state %s -> %s (peer=%s)", previous.value, state.value, self._peer_id)
        self._emit(StateChanged(previous=previous, current=state, peer_id=self._peer_id))

    # ------------------------------------------------------------------
    # Inbox

    def post(self, item: SignalingEnvelope | _PeerEvent) -> None:
        self._inbox.put_nowait(item)

    async def run(self) -> None:
        """Process inbox items one at a time, forever."""

        while True:
            item = await self._inbox.get()
            try:
                await self._dispatch(item)
            finally:
                self._inbox.task_done()

    async def drain(self) -> None:
        """Process everything currently queued, then return."""

        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            try:
                await self._dispatch(item)
            finally:
                self._inbox.task_done()

    async def _dispatch(self, item: SignalingEnvelope | _PeerEvent) -> None:
        try:
            if isinstance(item, _PeerEvent):
                await self._handle_peer_event(item)
            else:
                await self.handle_envelope(item)
        except Exception:
            LOGGER.exception("Unhandled error while processing %r", item)

    async def handle_envelope(self, envelope: SignalingEnvelope) -> None:
        if envelope.to and envelope.to != self._local_id:
            LOGGER.debug("Ignoring %s addressed to %s", envelope.type, envelope.to)
            return

        handler = {
            "offer": self._on_offer,
            "answer": self._on_answer,
            "ice-candidate": self._on_remote_candidate,
            "incoming-call": self._on_call_request,
            "reject": self._on_reject,
            "end": self._on_end,
        }.get(envelope.type)
        if handler is None:
            LOGGER.debug("Ignoring %s envelope", envelope.type)
            return
        if not envelope.sender:
            LOGGER.warning("Dropping %s envelope without sender", envelope.type)
            return
        await handler(envelope)

    # ------------------------------------------------------------------
    # Local commands

    async def call(self, target: str) -> None:
        target = (target or "").strip()
        if not target:
            raise ValueError("Call target may not be empty.")
        if target == self._local_id:
            raise ValueError("Cannot call the local endpoint.")
        if self._state is not CallState.IDLE:
            raise BusyLocallyError(f"Already {self._state.value} with {self._peer_id}.")
        if self._roster is not None and not self._roster.is_reachable(target):
            raise PeerUnreachableError(f"{target} is not online.")

        generation = self._generation
        self._role = CallRole.CALLER
        self._peer_id = target
        self._early_candidates.clear()
        self._ended_peer_id = None
        self._set_state(CallState.CALLING)

        try:
            await self._prepare_peer_connection(generation)
            if self._settings.announce_calls:
                await self._send("incoming-call", target)
                self._ensure_current(generation)

            offer = await self._pc.createOffer()
            self._ensure_current(generation)
            await self._pc.setLocalDescription(offer)
            self._ensure_current(generation)

            # Ringing before the send: an answer may overtake the send's completion.
            self._set_state(CallState.RINGING)
            await self._send("offer", target, offer=description_to_payload(self._pc.localDescription))
            self._ensure_current(generation)
        except _Superseded:
            LOGGER.info("Outgoing call to %s was cancelled during setup", target)
            return
        except Exception as exc:
            if not self._is_current(generation):
                LOGGER.info("Outgoing call to %s was cancelled during setup (%s)", target, exc)
                return
            error = _as_call_error(exc)
            await self._fail(error)
            if error is exc:
                raise
            raise error from exc

        self._start_ring_timer(generation)

    async def answer(self) -> None:
        if self._state is not CallState.OFFERED:
            LOGGER.warning("answer() ignored in state %s", self._state.value)
            return

        generation = self._generation
        peer_id = self._peer_id
        self._cancel_ring_timer()
        self._set_state(CallState.NEGOTIATING)

        try:
            answer = await self._pc.createAnswer()
            self._ensure_current(generation)
            await self._pc.setLocalDescription(answer)
            self._ensure_current(generation)
            await self._send("answer", peer_id, answer=description_to_payload(self._pc.localDescription))
            self._ensure_current(generation)
            await self._buffer.flush()
            self._ensure_current(generation)
        except _Superseded:
            LOGGER.info("Answer to %s abandoned: call already ended", peer_id)
            return
        except Exception as exc:
            if not self._is_current(generation):
                LOGGER.info("Answer to %s abandoned: call already ended (%s)", peer_id, exc)
                return
            error = _as_call_error(exc)
            await self._fail(error)
            if error is exc:
                raise
            raise error from exc

        self._set_state(CallState.ACTIVE)

    async def reject(self) -> None:
        if self._state is not CallState.OFFERED:
            LOGGER.warning("reject() ignored in state %s", self._state.value)
            return
        await self._hang_up(reason=REJECT_DECLINED)

    async def end_call(self) -> None:
        if self._state in (CallState.IDLE, CallState.ENDING):
            LOGGER.debug("end_call() ignored in state %s", self._state.value)
            return
        await self._hang_up()

    async def _hang_up(self, *, reason: str | None = None) -> None:
        generation = self._generation
        peer_id = self._peer_id
        self._set_state(CallState.ENDING)

        error: SignalingUnavailableError | None = None
        try:
            if reason is None:
                await self._send("end", peer_id)
            else:
                await self._send("reject", peer_id, reason=reason)
        except SignalingUnavailableError as exc:
            error = exc

        if not self._is_current(generation):
            return
        await self._teardown()
        if error is not None:
            LOGGER.warning("Hang-up notice to %s was not delivered: %s", peer_id, error.detail)
            self._emit(CallFailed(peer_id=peer_id, error=error))
            raise error
        self._emit(CallEnded(peer_id=peer_id, by_remote=False))

    def toggle_audio(self) -> bool:
        return self._media.toggle_audio()

    def toggle_video(self) -> bool:
        return self._media.toggle_video()

    async def teardown(self) -> None:
        """Release every call resource and return to idle. Safe to repeat."""

        await self._teardown()

    # ------------------------------------------------------------------
    # Remote envelopes

    async def _on_offer(self, envelope: SignalingEnvelope) -> None:
        sender = envelope.sender
        if self._state is not CallState.IDLE:
            if sender == self._peer_id and envelope.offer.sdp == self._remote_offer_sdp:
                LOGGER.debug("Ignoring duplicate offer from %s", sender)
                return
            LOGGER.info("Rejecting offer from %s: busy (%s with %s)", sender, self._state.value, self._peer_id)
            await self._send_quietly("reject", sender, reason=REJECT_BUSY)
            return

        generation = self._generation
        self._role = CallRole.CALLEE
        self._peer_id = sender
        self._remote_offer_sdp = envelope.offer.sdp
        self._ended_peer_id = None
        self._set_state(CallState.NEGOTIATING)

        for candidate in self._early_candidates.pop(sender, []):
            await self._buffer.push(candidate)
        self._early_candidates.clear()

        try:
            await self._prepare_peer_connection(generation)
            await self._pc.setRemoteDescription(description_from_payload(envelope.offer))
            self._ensure_current(generation)
        except _Superseded:
            return
        except MediaUnavailableError as exc:
            if self._is_current(generation):
                await self._send_quietly("reject", sender, reason=REJECT_MEDIA_UNAVAILABLE)
                await self._fail(exc)
            return
        except Exception as exc:
            if self._is_current(generation):
                await self._fail(_as_call_error(exc))
            return

        self._set_state(CallState.OFFERED)
        self._emit(IncomingCall(peer_id=sender))
        self._start_ring_timer(generation)

    async def _on_answer(self, envelope: SignalingEnvelope) -> None:
        if self._role is not CallRole.CALLER or envelope.sender != self._peer_id:
            LOGGER.debug("Ignoring unexpected answer from %s", envelope.sender)
            return
        if self._state is not CallState.RINGING:
            LOGGER.debug("Ignoring answer from %s in state %s", envelope.sender, self._state.value)
            return

        generation = self._generation
        self._cancel_ring_timer()
        self._set_state(CallState.NEGOTIATING)

        try:
            await self._pc.setRemoteDescription(description_from_payload(envelope.answer))
            self._ensure_current(generation)
            await self._buffer.flush()
            self._ensure_current(generation)
        except _Superseded:
            return
        except Exception as exc:
            if self._is_current(generation):
                await self._fail(_as_call_error(exc))
            return

        self._set_state(CallState.ACTIVE)

    async def _on_remote_candidate(self, envelope: SignalingEnvelope) -> None:
        sender = envelope.sender
        if self._state is CallState.IDLE:
            if sender == self._ended_peer_id:
                LOGGER.debug("Dropping late ICE candidate from %s after its call ended", sender)
                return
            if sender not in self._early_candidates and len(self._early_candidates) >= _EARLY_SENDER_LIMIT:
                LOGGER.warning("Dropping early ICE candidate from %s: too many senders", sender)
                return
            held = self._early_candidates.setdefault(sender, [])
            if len(held) >= self._settings.early_candidate_limit:
                LOGGER.warning("Dropping early ICE candidate from %s: limit reached", sender)
                return
            held.append(envelope.candidate)
            return
        if sender != self._peer_id or self._state is CallState.ENDING:
            LOGGER.debug("Dropping ICE candidate from %s in state %s", sender, self._state.value)
            return
        await self._buffer.push(envelope.candidate)

    async def _on_call_request(self, envelope: SignalingEnvelope) -> None:
        if self._state is CallState.IDLE:
            self._emit(CallRequested(peer_id=envelope.sender))

    async def _on_reject(self, envelope: SignalingEnvelope) -> None:
        if self._state is CallState.IDLE or envelope.sender != self._peer_id:
            LOGGER.debug("Ignoring reject from %s", envelope.sender)
            return

        peer_id = self._peer_id
        if envelope.reason == REJECT_BUSY:
            error: CallError = BusyRemotelyError(f"{peer_id} is busy.")
        else:
            error = CallRejectedError(f"{peer_id} declined the call.")
        LOGGER.info("Call rejected by %s (%s)", peer_id, envelope.reason or "no reason")
        await self._teardown()
        self._emit(CallFailed(peer_id=peer_id, error=error))

    async def _on_end(self, envelope: SignalingEnvelope) -> None:
        if self._state is CallState.IDLE or envelope.sender != self._peer_id:
            LOGGER.debug("Ignoring end from %s", envelope.sender)
            return

        peer_id = self._peer_id
        LOGGER.info("Call ended by %s", peer_id)
        await self._teardown()
        self._emit(CallEnded(peer_id=peer_id, by_remote=True))

    # ------------------------------------------------------------------
    # Peer connection

    async def _prepare_peer_connection(self, generation: int) -> None:
        tracks = await self._media.acquire()
        self._ensure_current(generation)

        pc = self._peer_factory()
        self._register_peer_handlers(pc, generation)
        for track in tracks:
            pc.addTrack(track)
        self._pc = pc

    def _register_peer_handlers(self, pc: Any, generation: int) -> None:
        @pc.on("icecandidate")
        def on_ice_candidate(candidate) -> None:
            if candidate is not None:
                self.post(_PeerEvent(generation, "icecandidate", candidate))

        @pc.on("track")
        def on_track(track) -> None:
            self.post(_PeerEvent(generation, "track", track))

        @pc.on("connectionstatechange")
        def on_connection_state() -> None:
            self.post(_PeerEvent(generation, "connectivity", pc.connectionState))

        @pc.on("iceconnectionstatechange")
        def on_ice_connection_state() -> None:
            self.post(_PeerEvent(generation, "connectivity", pc.iceConnectionState))

    async def _handle_peer_event(self, event: _PeerEvent) -> None:
        if event.generation != self._generation:
            LOGGER.debug("Ignoring stale %s event", event.kind)
            return

        if event.kind == "icecandidate":
            await self._send_local_candidate(event.payload)
        elif event.kind == "track":
            await self._attach_remote_track(event.payload)
        elif event.kind == "connectivity":
            await self._on_connectivity(event.payload)
        elif event.kind == "ring-timeout":
            await self._on_ring_timeout()

    async def _send_local_candidate(self, candidate: Any) -> None:
        # The peer identity was fixed when the call started; never guess it here.
        if self._peer_id is None or self._state is CallState.ENDING:
            return
        await self._send_quietly("ice-candidate", self._peer_id, candidate=candidate_to_payload(candidate))

    async def _attach_remote_track(self, track: Any) -> None:
        generation = self._generation
        if self._sink is None:
            self._sink = self._sink_factory()
        self._sink.addTrack(track)
        await self._sink.start()
        if not self._is_current(generation):
            return
        LOGGER.info("Remote %s track from %s", track.kind, self._peer_id)
        self._emit(RemoteTrackAvailable(peer_id=self._peer_id, kind=track.kind, track=track))

    async def _on_connectivity(self, value: str) -> None:
        if value not in _LOST_CONNECTIVITY:
            return
        if self._state is CallState.ACTIVE:
            await self._fail(PeerDisconnectedError(f"Connectivity to {self._peer_id} is {value}."))
        elif value == "failed" and self._state is not CallState.ENDING:
            await self._fail(NegotiationFailedError("ICE connectivity checks failed."))

    async def _apply_remote_candidate(self, payload: IceCandidatePayload) -> None:
        if self._pc is None:
            return
        await self._pc.addIceCandidate(candidate_from_payload(payload))

    # ------------------------------------------------------------------
    # Ringing timeout

    def _start_ring_timer(self, generation: int) -> None:
        timeout = self._settings.ringing_timeout
        if not timeout or self._state not in (CallState.RINGING, CallState.OFFERED):
            return
        self._cancel_ring_timer()
        self._ring_timer = asyncio.create_task(self._ring_after(generation, timeout))

    async def _ring_after(self, generation: int, timeout: float) -> None:
        await asyncio.sleep(timeout)
        self.post(_PeerEvent(generation, "ring-timeout"))

    def _cancel_ring_timer(self) -> None:
        timer, self._ring_timer = self._ring_timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _on_ring_timeout(self) -> None:
        if self._state not in (CallState.RINGING, CallState.OFFERED):
            return
        LOGGER.info("Call with %s was not answered in time", self._peer_id)
        try:
            await self.end_call()
        except SignalingUnavailableError as exc:
            LOGGER.info("Ringing timeout hang-up was not delivered: %s", exc.detail)

    # ------------------------------------------------------------------
    # Teardown / failure

    async def _teardown(self) -> None:
        if self._state is CallState.IDLE and self._pc is None and self._sink is None:
            return

        pc, self._pc = self._pc, None
        sink, self._sink = self._sink, None
        self._generation += 1
        self._cancel_ring_timer()
        self._buffer.clear()
        self._early_candidates.clear()
        if self._peer_id is not None:
            # Candidates still in flight from this peer belong to the call just ended.
            self._ended_peer_id = self._peer_id
        if self._state is not CallState.IDLE:
            self._set_state(CallState.ENDING)
        self._role = None
        self._peer_id = None
        self._remote_offer_sdp = None
        self._set_state(CallState.IDLE)

        if sink is not None:
            try:
                await sink.stop()
            except Exception:
                LOGGER.exception("Failed to detach remote media")
        if pc is not None:
            try:
                await pc.close()
            except Exception:
                LOGGER.exception("Failed to close peer connection")

    async def _fail(self, error: CallError) -> None:
        peer_id = self._peer_id
        LOGGER.warning("Call with %s failed (%s): %s", peer_id, error.condition, error.detail)
        await self._teardown()
        self._emit(CallFailed(peer_id=peer_id, error=error))

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _ensure_current(self, generation: int) -> None:
        if generation != self._generation:
            raise _Superseded()

    # ------------------------------------------------------------------
    # Signaling

    async def _send(self, kind: str, to: str, **fields: Any) -> None:
        channel = self._channel_ref()
        if channel is None:
            raise SignalingUnavailableError("Signaling channel is gone.")
        envelope = SignalingEnvelope(type=kind, sender=self._local_id, to=to, **fields)
        await channel.send(envelope)

    async def _send_quietly(self, kind: str, to: str, **fields: Any) -> None:
        try:
            await self._send(kind, to, **fields)
        except SignalingUnavailableError as exc:
            LOGGER.warning("Could not send %s to %s: %s", kind, to, exc.detail)


def _as_call_error(exc: Exception) -> CallError:
    if isinstance(exc, CallError):
        return exc
    return NegotiationFailedError(f"{type(exc).__name__}: {exc}")
