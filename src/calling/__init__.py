"""Peer-to-peer call negotiation.

A softphone connects to a signaling relay, learns who is online, and runs one
call at a time through :class:`calling.session.CallSession`. Media transport
is delegated to aiortc; this package only decides when descriptions and ICE
candidates are created, exchanged and applied.
"""
