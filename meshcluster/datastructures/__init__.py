"""Shared datastructures and type aliases for meshcluster."""

from .type_aliases import (
    ConnectionId,
    DurationMilliseconds,
    DurationSeconds,
    HostPort,
    ServiceName,
    ShardKey,
)

__all__ = [
    "ConnectionId",
    "DurationMilliseconds",
    "DurationSeconds",
    "HostPort",
    "ServiceName",
    "ShardKey",
]
