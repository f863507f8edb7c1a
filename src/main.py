"""Command line softphone."""

from __future__ import annotations

import argparse
import asyncio
import logging

from calling.errors import CallError
from calling.phone import Softphone
from calling.states import CallEnded, CallFailed, IncomingCall, RemoteTrackAvailable, StateChanged
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Peer-to-peer audio/video softphone")
    parser.add_argument("--id", dest="local_id", help="Endpoint identity (overrides LOCAL_ID)")
    parser.add_argument("--relay", dest="relay_url", help="Signaling relay URL (overrides RELAY_URL)")
    parser.add_argument("--call", dest="target", help="Endpoint to call once connected")
    parser.add_argument("--auto-answer", action="store_true", help="Answer incoming calls automatically")
    return parser.parse_args()


def _log_event(event) -> None:
    if isinstance(event, StateChanged):
        LOGGER.info("[%s] %s -> %s", event.peer_id or "-", event.previous.value, event.current.value)
    elif isinstance(event, IncomingCall):
        LOGGER.info("Incoming call from %s", event.peer_id)
    elif isinstance(event, RemoteTrackAvailable):
        LOGGER.info("Receiving %s from %s", event.kind, event.peer_id)
    elif isinstance(event, CallEnded):
        LOGGER.info("Call with %s ended (%s)", event.peer_id, "remote" if event.by_remote else "local")
    elif isinstance(event, CallFailed):
        LOGGER.warning("Call with %s failed: %s", event.peer_id, event.error.detail)


async def _call_when_online(phone: Softphone, target: str, timeout: float = 30.0) -> None:
    online = asyncio.Event()

    def check(ids) -> None:
        if target in ids:
            online.set()

    phone.roster.add_listener(check)
    check(phone.roster.ids)
    try:
        await asyncio.wait_for(online.wait(), timeout)
    except asyncio.TimeoutError:
        LOGGER.error("%s did not come online within %ss", target, timeout)
        return

    try:
        await phone.call(target)
    except CallError as exc:
        LOGGER.error("Call to %s failed: %s", target, exc.detail)


async def _amain(args: argparse.Namespace) -> None:
    overrides = {
        key: value
        for key, value in {
            "local_id": args.local_id,
            "relay_url": args.relay_url,
            "auto_answer": True if args.auto_answer else None,
        }.items()
        if value is not None
    }
    settings = get_settings().model_copy(update=overrides)

    phone = Softphone(settings)
    phone.add_listener(_log_event)
    async with phone:
        if args.target:
            await _call_when_online(phone, args.target)
        await asyncio.Event().wait()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("aioice").setLevel(logging.WARNING)
    try:
        asyncio.run(_amain(args))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted")


if __name__ == "__main__":
    main()
