"""
Loopback routing mesh.

An in-process stand-in for the relay network under test: channels dial
each other over a ``LoopbackNetwork`` address space, relays keep a gossip
membership ring and route service advertisements to exit relays.
"""

from .channel import (
    CallRequest,
    Channel,
    ChannelOptions,
    Connection,
    ConnectionDirection,
    JsonCaller,
    Peer,
)
from .membership import MembershipClient
from .network import LoopbackNetwork, split_host_port
from .relay import RelayNode, RelaySettings, RelayState
from .ring import HashRing
from .shards import ExitShard, ShardResolver
from .trace_collector import FakeTraceCollector

__all__ = [
    "CallRequest",
    "Channel",
    "ChannelOptions",
    "Connection",
    "ConnectionDirection",
    "ExitShard",
    "FakeTraceCollector",
    "HashRing",
    "JsonCaller",
    "LoopbackNetwork",
    "MembershipClient",
    "Peer",
    "RelayNode",
    "RelaySettings",
    "RelayState",
    "ShardResolver",
    "split_host_port",
]
