"""Pydantic schemas for the relay wire format."""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EnvelopeType = Literal[
    "join-room",
    "user-list",
    "offer",
    "answer",
    "ice-candidate",
    "incoming-call",
    "reject",
    "end",
]

# Older clients announce calls as "call-request".
_TYPE_ALIASES = {"call-request": "incoming-call"}

_ADDRESSED_TYPES = {"offer", "answer", "ice-candidate", "incoming-call", "reject", "end"}

REJECT_BUSY = "busy"
REJECT_DECLINED = "declined"
REJECT_MEDIA_UNAVAILABLE = "media-unavailable"


class SessionDescriptionPayload(BaseModel):
    """Offer or answer SDP in browser ``RTCSessionDescriptionInit`` shape."""

    sdp: str
    type: Literal["offer", "answer"]


class IceCandidatePayload(BaseModel):
    """ICE candidate in browser ``RTCIceCandidateInit`` shape."""

    candidate: str
    sdpMid: str | None = None
    sdpMLineIndex: int | None = None

    @field_validator("candidate")
    @classmethod
    def candidate_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Candidate may not be empty.")
        return value


class SignalingEnvelope(BaseModel):
    """A single relay-forwarded message.

    The relay only looks at ``type`` and ``to``; everything else is opaque to
    it. Which payload field is required depends on ``type``.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: EnvelopeType
    sender: str | None = Field(default=None, alias="from")
    to: str | None = None
    offer: SessionDescriptionPayload | None = None
    answer: SessionDescriptionPayload | None = None
    candidate: IceCandidatePayload | None = None
    reason: str | None = None
    id: str | None = None
    ids: list[str] | None = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return _TYPE_ALIASES.get(value, value)
        return value

    @model_validator(mode="after")
    def check_payload(self) -> SignalingEnvelope:
        if self.type == "offer" and (self.offer is None or self.offer.type != "offer"):
            raise ValueError("offer envelope requires an offer description")
        if self.type == "answer" and (self.answer is None or self.answer.type != "answer"):
            raise ValueError("answer envelope requires an answer description")
        if self.type == "ice-candidate" and self.candidate is None:
            raise ValueError("ice-candidate envelope requires a candidate")
        if self.type == "join-room" and not self.id:
            raise ValueError("join-room envelope requires an id")
        if self.type == "user-list" and self.ids is None:
            raise ValueError("user-list envelope requires ids")
        if self.type in _ADDRESSED_TYPES and not self.to:
            raise ValueError(f"{self.type} envelope requires a recipient")
        return self

    def to_wire(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True))


def parse_envelope(text: str | bytes) -> SignalingEnvelope:
    """Decode one relay frame.

    Raises:
        ValueError: if the frame is not JSON or does not validate.
    """

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid envelope JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Envelope must be a JSON object")
    return SignalingEnvelope.model_validate(data)
