from __future__ import annotations

import json

import pytest

from calling.schemas import SignalingEnvelope, parse_envelope


def test_parse_offer_reads_from_field() -> None:
    raw = json.dumps(
        {
            "type": "offer",
            "from": "alice",
            "to": "bob",
            "offer": {"type": "offer", "sdp": "v=0"},
        }
    )

    envelope = parse_envelope(raw)

    assert envelope.type == "offer"
    assert envelope.sender == "alice"
    assert envelope.to == "bob"
    assert envelope.offer.sdp == "v=0"


def test_to_wire_uses_relay_field_names_and_drops_empty_fields() -> None:
    envelope = SignalingEnvelope(type="end", sender="alice", to="bob")

    assert json.loads(envelope.to_wire()) == {"type": "end", "from": "alice", "to": "bob"}


def test_call_request_is_an_alias_for_incoming_call() -> None:
    envelope = parse_envelope('{"type": "call-request", "from": "alice", "to": "bob"}')

    assert envelope.type == "incoming-call"


def test_user_list_needs_no_recipient() -> None:
    envelope = parse_envelope('{"type": "user-list", "ids": ["alice", "bob"]}')

    assert envelope.ids == ["alice", "bob"]


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"type": "ring", "to": "bob"}',
        '{"type": "offer", "to": "bob"}',
        '{"type": "offer", "to": "bob", "offer": {"type": "answer", "sdp": "v=0"}}',
        '{"type": "answer", "to": "bob", "answer": {"type": "offer", "sdp": "v=0"}}',
        '{"type": "ice-candidate", "to": "bob"}',
        '{"type": "ice-candidate", "to": "bob", "candidate": {"candidate": "  "}}',
        '{"type": "end"}',
        '{"type": "join-room"}',
        '{"type": "user-list"}',
    ],
)
def test_invalid_frames_raise_value_error(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_envelope(raw)
