from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from calling.errors import CallError
from calling.presence import PresenceRoster
from calling.schemas import SignalingEnvelope
from calling.session import CallSession, Listener
from calling.states import IncomingCall
from config.settings import Settings, get_settings
from media.source import MediaSource
from signaling.channel import SignalingChannel, WebSocketSignalingChannel

LOGGER = logging.getLogger(__name__)


class Softphone:
    """Wires relay, roster, local media and the call session together.

    Roster broadcasts are consumed here; every other envelope is queued for
    the session, whose inbox is drained by a background task while started.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        channel: SignalingChannel | None = None,
        media: MediaSource | None = None,
        peer_factory: Callable[[], Any] | None = None,
        sink_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        local_id = self._settings.local_id
        if not local_id:
            raise ValueError("LOCAL_ID must be configured before signaling.")

        self.roster = PresenceRoster(local_id)
        self.channel = channel or WebSocketSignalingChannel(
            local_id,
            reconnect_delay=self._settings.signaling_reconnect_delay,
        )
        self.media = media or MediaSource(self._settings)

        session_kwargs: dict[str, Any] = {"settings": self._settings, "roster": self.roster}
        if peer_factory is not None:
            session_kwargs["peer_factory"] = peer_factory
        if sink_factory is not None:
            session_kwargs["sink_factory"] = sink_factory
        self.session = CallSession(local_id, self.channel, self.media, **session_kwargs)

        self.channel.on_message(self._route)
        if self._settings.auto_answer:
            self.session.add_listener(self._auto_answer)
        self._runner: asyncio.Task | None = None

    @property
    def local_id(self) -> str:
        return self.session.local_id

    def add_listener(self, listener: Listener) -> None:
        self.session.add_listener(listener)

    async def start(self) -> None:
        await self.channel.connect(self._settings.relay_url)
        self._runner = asyncio.create_task(self.session.run())
        LOGGER.info("Softphone %s online", self.local_id)

    async def stop(self) -> None:
        try:
            await self.session.end_call()
        except CallError as exc:
            LOGGER.warning("Hang-up during shutdown failed: %s", exc.detail)
        await self.session.teardown()

        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

        await self.channel.disconnect()
        self.media.stop()
        LOGGER.info("Softphone %s offline", self.local_id)

    async def __aenter__(self) -> Softphone:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def _route(self, envelope: SignalingEnvelope) -> None:
        if envelope.type == "user-list":
            self.roster.replace(envelope.ids or [])
            return
        self.session.post(envelope)

    async def _auto_answer(self, event) -> None:
        if not isinstance(event, IncomingCall):
            return
        LOGGER.info("Auto-answering call from %s", event.peer_id)
        try:
            await self.session.answer()
        except CallError as exc:
            LOGGER.warning("Auto-answer failed: %s", exc.detail)

    # Command surface

    async def call(self, target: str) -> None:
        await self.session.call(target)

    async def answer(self) -> None:
        await self.session.answer()

    async def reject(self) -> None:
        await self.session.reject()

    async def end_call(self) -> None:
        await self.session.end_call()

    def toggle_audio(self) -> bool:
        return self.session.toggle_audio()

    def toggle_video(self) -> bool:
        return self.session.toggle_video()
