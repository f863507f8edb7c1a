"""Relay connection carrying signaling envelopes between named endpoints.

The relay is best-effort: it forwards each envelope to the endpoint named in
``to`` and makes no ordering promise across envelopes. Nothing here retries a
failed send.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

import websockets
from websockets.exceptions import WebSocketException

from calling.errors import SignalingUnavailableError
from calling.schemas import SignalingEnvelope, parse_envelope

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[SignalingEnvelope], None]

_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class SignalingChannel(ABC):
    """Contract the call session relies on."""

    @abstractmethod
    async def connect(self, relay_url: str) -> None:
        """Open the relay connection and announce presence."""

    @abstractmethod
    async def send(self, envelope: SignalingEnvelope) -> None:
        """Emit one envelope; a no-op once the channel was disconnected."""

    @abstractmethod
    def on_message(self, handler: MessageHandler) -> None:
        """Register a handler for every received envelope."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the relay connection."""


class WebSocketSignalingChannel(SignalingChannel):
    """JSON-over-WebSocket relay client."""

    def __init__(
        self,
        local_id: str,
        *,
        reconnect_delay: float = 2.0,
        open_timeout: float = 10.0,
    ) -> None:
        if not local_id or not local_id.strip():
            raise ValueError("A signaling channel needs a local identity.")
        self._local_id = local_id
        self._reconnect_delay = reconnect_delay
        self._open_timeout = open_timeout
        self._relay_url: str | None = None
        self._ws = None
        self._reader: asyncio.Task | None = None
        self._handlers: list[MessageHandler] = []
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    async def connect(self, relay_url: str) -> None:
        self._relay_url = relay_url
        self._closed = False
        LOGGER.info("Connecting to relay: %s", relay_url)
        self._ws = await self._open(relay_url)
        await self._announce()
        self._reader = asyncio.create_task(self._read_loop())

    async def _open(self, relay_url: str):
        try:
            return await websockets.connect(
                relay_url,
                ping_interval=20,
                ping_timeout=20,
                open_timeout=self._open_timeout,
            )
        except _CONNECT_ERRORS as exc:
            raise SignalingUnavailableError(f"Cannot reach relay {relay_url}: {exc}") from exc

    async def _announce(self) -> None:
        await self.send(SignalingEnvelope(type="join-room", id=self._local_id))

    async def _read_loop(self) -> None:
        while not self._closed:
            ws = self._ws
            try:
                async for message in ws:
                    self._dispatch(message)
            except websockets.ConnectionClosed as exc:
                LOGGER.warning("Relay connection closed: %s", exc)

            self._ws = None
            if self._closed or not self._reconnect_delay:
                return
            await self._reconnect()

    async def _reconnect(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._reconnect_delay)
            try:
                self._ws = await self._open(self._relay_url)
                await self._announce()
            except SignalingUnavailableError:
                LOGGER.warning("Relay reconnect failed; retrying in %ss", self._reconnect_delay)
                continue
            LOGGER.info("Reconnected to relay: %s", self._relay_url)
            return

    def _dispatch(self, message: str | bytes) -> None:
        try:
            envelope = parse_envelope(message)
        except ValueError as exc:
            LOGGER.warning("Dropping malformed relay frame: %s", exc)
            return

        for handler in list(self._handlers):
            try:
                handler(envelope)
            except Exception:
                LOGGER.exception("Signaling handler failed for %s envelope", envelope.type)

    async def send(self, envelope: SignalingEnvelope) -> None:
        if self._closed:
            LOGGER.debug("Channel disconnected; dropping %s envelope", envelope.type)
            return

        ws = self._ws
        if ws is None:
            raise SignalingUnavailableError("Not connected to the relay.")

        if envelope.sender is None and envelope.type != "join-room":
            envelope = envelope.model_copy(update={"sender": self._local_id})
        try:
            await ws.send(envelope.to_wire())
        except (websockets.ConnectionClosed, OSError) as exc:
            raise SignalingUnavailableError(f"Relay send failed: {exc}") from exc

    async def disconnect(self) -> None:
        self._closed = True
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
            LOGGER.info("Disconnected from relay")
