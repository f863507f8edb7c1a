from __future__ import annotations

import asyncio

import pytest

from calling.phone import Softphone
from calling.schemas import SignalingEnvelope
from calling.states import CallState
from config.settings import Settings
from conftest import FakeChannel, FakePeerConnection, FakeSink, make_settings, offer_from, run


def build_phone(**overrides) -> tuple[Softphone, FakeChannel, list[FakePeerConnection]]:
    channel = FakeChannel()
    pcs: list[FakePeerConnection] = []

    def new_pc() -> FakePeerConnection:
        pcs.append(FakePeerConnection())
        return pcs[-1]

    phone = Softphone(
        make_settings(**overrides),
        channel=channel,
        peer_factory=new_pc,
        sink_factory=FakeSink,
    )
    return phone, channel, pcs


def test_roster_broadcasts_update_roster_and_offers_reach_session() -> None:
    async def scenario() -> Softphone:
        phone, channel, _ = build_phone()
        channel.deliver(SignalingEnvelope(type="user-list", ids=["alice", "bob"]))
        channel.deliver(offer_from("bob"))
        await phone.session.drain()
        return phone

    phone = run(scenario())

    assert phone.roster.ids == ("bob",)
    assert phone.session.state is CallState.OFFERED


def test_auto_answer_picks_up_incoming_calls() -> None:
    async def scenario() -> tuple[Softphone, FakeChannel]:
        phone, channel, _ = build_phone(auto_answer=True)
        channel.deliver(offer_from("bob"))
        await phone.session.drain()
        await asyncio.sleep(0.01)
        return phone, channel

    phone, channel = run(scenario())

    assert phone.session.state is CallState.ACTIVE
    assert channel.sent_types() == ["answer"]


def test_stop_hangs_up_and_disconnects() -> None:
    async def scenario() -> tuple[Softphone, FakeChannel, list[FakePeerConnection]]:
        phone, channel, pcs = build_phone()
        async with phone:
            assert channel.relay_url == "ws://localhost:8765"
            channel.deliver(SignalingEnvelope(type="user-list", ids=["alice", "bob"]))
            await phone.call("bob")
        return phone, channel, pcs

    phone, channel, pcs = run(scenario())

    assert channel.sent_types() == ["offer", "end"]
    assert channel.disconnected is True
    assert phone.session.state is CallState.IDLE
    assert pcs[0].close_calls == 1
    assert phone.media.acquired is False


def test_toggles_report_muted_state() -> None:
    phone, _, _ = build_phone()

    assert phone.toggle_video() is True
    assert phone.toggle_video() is False


def test_missing_identity_is_rejected(monkeypatch) -> None:
    monkeypatch.delenv("LOCAL_ID", raising=False)

    with pytest.raises(ValueError):
        Softphone(Settings(_env_file=None), channel=FakeChannel())
