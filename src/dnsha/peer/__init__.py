"""Peer channel: heartbeats between the two nodes of the pair.

Components:
- Heartbeat: bounded JSON wire message
- PeerState: last known (possibly stale) view of the peer
- PeerChannel: send/receive loops, ordering and liveness rules
- UdpTransport / LoopbackTransport: datagram links
"""

from dnsha.peer.channel import HeartbeatPayload, PeerChannel
from dnsha.peer.messages import Heartbeat, PeerState
from dnsha.peer.transport import HeartbeatTransport, LoopbackTransport, UdpTransport

__all__ = [
    "Heartbeat",
    "HeartbeatPayload",
    "HeartbeatTransport",
    "LoopbackTransport",
    "PeerChannel",
    "PeerState",
    "UdpTransport",
]
