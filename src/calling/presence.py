from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator

LOGGER = logging.getLogger(__name__)


class PresenceRoster:
    """Last known set of callable endpoints, as broadcast by the relay.

    Every ``user-list`` replaces the roster wholesale. The relay does not
    filter the receiver out of its own broadcast, so the local identity is
    dropped here.
    """

    def __init__(self, local_id: str) -> None:
        self._local_id = local_id
        self._ids: tuple[str, ...] = ()
        self._listeners: list[Callable[[tuple[str, ...]], None]] = []

    def replace(self, ids: Iterable[str]) -> None:
        seen: dict[str, None] = {}
        for endpoint_id in ids:
            endpoint_id = str(endpoint_id).strip()
            if endpoint_id and endpoint_id != self._local_id:
                seen.setdefault(endpoint_id, None)

        roster = tuple(seen)
        if roster == self._ids:
            return
        self._ids = roster
        LOGGER.info("Roster updated: %s reachable endpoint(s)", len(roster))
        for listener in list(self._listeners):
            try:
                listener(roster)
            except Exception:
                LOGGER.exception("Roster listener failed")

    def is_reachable(self, endpoint_id: str) -> bool:
        return endpoint_id in self._ids

    def add_listener(self, listener: Callable[[tuple[str, ...]], None]) -> None:
        self._listeners.append(listener)

    @property
    def ids(self) -> tuple[str, ...]:
        return self._ids

    def __contains__(self, endpoint_id: object) -> bool:
        return endpoint_id in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)
