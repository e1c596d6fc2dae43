"""
Semantic type aliases for meshcluster.

These aliases name the raw strings and numbers that flow between the
harness and the loopback mesh so signatures read in domain terms.
"""

from collections.abc import Mapping
from typing import Any

# Time types
type DurationSeconds = float
type DurationMilliseconds = float

# Network types
type HostAddress = str
type PortNumber = int
type HostPort = str  # "host:port" of a listening channel
type ConnectionId = str

# Mesh routing types
type ServiceName = str
type EndpointName = str
type ShardKey = str  # "<service>~<replica index>"
type RingChecksum = int
type CallHeaders = Mapping[str, str]
type JsonBody = Any

# Config types
type ConfigOverlay = dict[str, Any]
type LogLevelName = str
