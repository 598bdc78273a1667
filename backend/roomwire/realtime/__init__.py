"""Realtime core: connection registry, membership oracle, fanout, presence
and the message pipeline, composed by ``ChatHub``."""

from .fanout import FanoutEngine
from .hub import ChatHub
from .membership import MembershipOracle, MembershipStatus
from .pipeline import MessagePipeline
from .presence import PresenceState, PresenceTracker, StatusCache
from .registry import Connection, ConnectionRegistry, Transport

__all__ = [
    "ChatHub",
    "Connection",
    "ConnectionRegistry",
    "FanoutEngine",
    "MembershipOracle",
    "MembershipStatus",
    "MessagePipeline",
    "PresenceState",
    "PresenceTracker",
    "StatusCache",
    "Transport",
]
