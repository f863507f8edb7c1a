"""Domain-specific exceptions for call negotiation.

Every failure inside a call is converted to one of these before it reaches
listeners, so the UI layer only ever has to switch on ``condition``.
"""

from __future__ import annotations


class CallError(Exception):
    condition: str = "call-error"
    default_detail: str = "Call error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class MediaUnavailableError(CallError):
    condition = "media-unavailable"
    default_detail = "Camera or microphone is not available."


class NegotiationFailedError(CallError):
    condition = "negotiation-failed"
    default_detail = "Session description exchange failed."


class SignalingUnavailableError(CallError):
    condition = "signaling-unavailable"
    default_detail = "Signaling relay is not reachable."


class BusyLocallyError(CallError):
    condition = "busy-locally"
    default_detail = "A call is already in progress."


class BusyRemotelyError(CallError):
    condition = "busy-remotely"
    default_detail = "The remote endpoint is busy."


class PeerDisconnectedError(CallError):
    condition = "peer-disconnected"
    default_detail = "Connectivity to the remote endpoint was lost."


class PeerUnreachableError(CallError):
    condition = "peer-unreachable"
    default_detail = "The remote endpoint is not online."


class CallRejectedError(CallError):
    condition = "rejected"
    default_detail = "The call was declined."
