from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CandidateBuffer(Generic[T]):
    """Holds remote ICE candidates until the peer connection can take them.

    Candidates are buffered until :meth:`flush` runs once for the session;
    from then on every pushed candidate is applied straight away. ``clear``
    drops whatever is pending and re-arms the buffer for the next session.
    """

    def __init__(self, apply: Callable[[T], Awaitable[None]]) -> None:
        self._apply = apply
        self._pending: list[T] = []
        self._flushed = False
        self._flushing = False
        self._epoch = 0

    @property
    def flushed(self) -> bool:
        return self._flushed

    def __len__(self) -> int:
        return len(self._pending)

    async def push(self, candidate: T) -> bool:
        """Buffer or apply ``candidate``. Returns True if it was applied now."""

        if not self._flushed or self._flushing:
            # A running flush picks this up in order.
            self._pending.append(candidate)
            return False
        await self._apply_one(candidate)
        return True

    async def flush(self) -> int:
        """Apply all buffered candidates in arrival order, exactly once."""

        if self._flushed:
            return 0

        self._flushed = True
        self._flushing = True
        epoch = self._epoch
        applied = 0
        try:
            while self._pending:
                candidate = self._pending.pop(0)
                await self._apply_one(candidate)
                if epoch != self._epoch:
                    return applied
                applied += 1
        finally:
            if epoch == self._epoch:
                self._flushing = False

        if applied:
            LOGGER.debug("Flushed %s buffered ICE candidates", applied)
        return applied

    def clear(self) -> None:
        dropped = len(self._pending)
        self._pending.clear()
        self._flushed = False
        self._flushing = False
        self._epoch += 1
        if dropped:
            LOGGER.debug("Discarded %s buffered ICE candidates", dropped)

    async def _apply_one(self, candidate: T) -> None:
        try:
            await self._apply(candidate)
        except Exception:
            LOGGER.exception("Failed to apply remote ICE candidate")
