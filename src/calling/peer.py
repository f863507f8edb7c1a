"""Peer-connection construction and wire conversions for aiortc objects."""

from __future__ import annotations

import logging

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from calling.schemas import IceCandidatePayload, SessionDescriptionPayload
from config.settings import Settings

LOGGER = logging.getLogger(__name__)

_CANDIDATE_PREFIX = "candidate:"


def build_configuration(settings: Settings) -> RTCConfiguration:
    ice_servers: list[RTCIceServer] = []
    for url in settings.ice_servers:
        if url.startswith(("turn:", "turns:")):
            ice_servers.append(
                RTCIceServer(
                    urls=url,
                    username=settings.turn_username,
                    credential=settings.turn_credential,
                )
            )
        else:
            ice_servers.append(RTCIceServer(urls=url))
    return RTCConfiguration(iceServers=ice_servers)


def create_peer_connection(settings: Settings) -> RTCPeerConnection:
    pc = RTCPeerConnection(configuration=build_configuration(settings))
    LOGGER.debug("Created peer connection with %s ICE servers", len(settings.ice_servers))
    return pc


def description_from_payload(payload: SessionDescriptionPayload) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=payload.sdp, type=payload.type)


def description_to_payload(description: RTCSessionDescription) -> SessionDescriptionPayload:
    return SessionDescriptionPayload(sdp=description.sdp, type=description.type)


def candidate_from_payload(payload: IceCandidatePayload) -> RTCIceCandidate:
    """Parse a browser-style candidate line into an aiortc candidate.

    Raises:
        ValueError: if the candidate line cannot be parsed.
    """

    line = payload.candidate
    if line.startswith(_CANDIDATE_PREFIX):
        line = line[len(_CANDIDATE_PREFIX):]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as exc:
        raise ValueError(f"Unparseable ICE candidate: {payload.candidate!r}") from exc
    candidate.sdpMid = payload.sdpMid
    candidate.sdpMLineIndex = payload.sdpMLineIndex
    return candidate


def candidate_to_payload(candidate: RTCIceCandidate) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate=_CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        sdpMid=candidate.sdpMid,
        sdpMLineIndex=candidate.sdpMLineIndex,
    )
