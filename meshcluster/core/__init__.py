"""
meshcluster core module

Settings, logging, wire models, serialization and the small async
primitives the rest of the harness is built from.
"""

from .assertions import AssertionFailure, CollapsedAssert
from .config import (
    K_VALUE_CONFIG_KEY,
    ClusterEnvironment,
    ClusterSettings,
    default_k_value,
    load_config_overlay,
)
from .events import Event, Subscription
from .logging import CapturedRecord, LogCapture, configure_logging
from .model import (
    AdvertisementRequest,
    AdvertisementResponse,
    CallError,
    ChannelDestroyedError,
    MembershipError,
    MeshError,
    NoSuchEndpointError,
    RegistrationFailure,
    RequestTimeoutError,
    ServiceAdvertisement,
)
from .ready_signal import CountedReadySignal, join_all
from .remote_config import RemoteConfigFile
from .serialization import JsonSerializer

__all__ = [
    "K_VALUE_CONFIG_KEY",
    "AdvertisementRequest",
    "AdvertisementResponse",
    "AssertionFailure",
    "CallError",
    "CapturedRecord",
    "ChannelDestroyedError",
    "ClusterEnvironment",
    "ClusterSettings",
    "CollapsedAssert",
    "CountedReadySignal",
    "Event",
    "JsonSerializer",
    "LogCapture",
    "MembershipError",
    "MeshError",
    "NoSuchEndpointError",
    "RegistrationFailure",
    "RemoteConfigFile",
    "RequestTimeoutError",
    "ServiceAdvertisement",
    "Subscription",
    "configure_logging",
    "default_k_value",
    "join_all",
    "load_config_overlay",
]
