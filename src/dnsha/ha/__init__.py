"""Failover: role decision and virtual address ownership for a two-node pair.

Architecture:
- FailoverFSM decides (pure, deterministic)
- FailoverController applies decisions: bind/unbind, publish role, log
- IdentityCell publishes the role to every other component (single writer)
- VipBinder implementations own the OS (or simulated) binding

Components:
- NodeIdentity / IdentityCell: node identity and its publication
- FailoverFSM / TransitionEvent / TransitionReason: decision logic
- FailoverController: evaluation loop
- IpRouteBinder / InMemoryBinder / VirtualSegment: VIP binders
"""

from dnsha.ha.controller import FailoverController
from dnsha.ha.fsm import (
    FailoverFSM,
    FailoverInputs,
    TransitionEvent,
    TransitionReason,
    wins_election,
)
from dnsha.ha.role import IdentityCell, NodeIdentity
from dnsha.ha.vip import InMemoryBinder, IpRouteBinder, VipBinder, VirtualSegment

__all__ = [
    "FailoverController",
    "FailoverFSM",
    "FailoverInputs",
    "IdentityCell",
    "InMemoryBinder",
    "IpRouteBinder",
    "NodeIdentity",
    "TransitionEvent",
    "TransitionReason",
    "VipBinder",
    "VirtualSegment",
    "wins_election",
]
