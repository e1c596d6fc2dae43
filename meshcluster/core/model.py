"""
Wire payloads and error types shared by the harness and the loopback mesh.

The advertisement payloads mirror the relay's ``ad``/``unad`` body shape:
``{"services": [{"serviceName": ..., "cost": ...}]}``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from meshcluster.datastructures.type_aliases import (
    EndpointName,
    HostPort,
    ServiceName,
)


class ServiceAdvertisement(BaseModel):
    """A single service entry inside an advertise/withdraw request."""

    model_config = ConfigDict(populate_by_name=True)

    service_name: ServiceName = Field(
        alias="serviceName", description="The advertised service name."
    )
    cost: int | None = Field(
        default=None, description="Routing cost; omitted on withdrawal."
    )


class AdvertisementRequest(BaseModel):
    """Body of the ``ad`` and ``unad`` calls."""

    services: list[ServiceAdvertisement] = Field(
        default_factory=list, description="Services being advertised or withdrawn."
    )

    def to_body(self) -> dict[str, object]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AdvertisementResponse(BaseModel):
    """Reply to ``ad``/``unad``: how many exit relays acted on it."""

    model_config = ConfigDict(populate_by_name=True)

    connection_count: int = Field(
        default=0,
        alias="connectionCount",
        description="Number of exit relays that accepted the request.",
    )


class RelayedService(BaseModel):
    """Service entry forwarded from the entry relay to an exit relay."""

    model_config = ConfigDict(populate_by_name=True)

    service_name: ServiceName = Field(alias="serviceName")
    host_port: HostPort = Field(alias="hostPort")


class RelayRequest(BaseModel):
    """Body of the relay-to-relay ``relay-ad``/``relay-unad`` calls."""

    services: list[RelayedService] = Field(default_factory=list)

    def to_body(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


class MembershipDigest(BaseModel):
    """Gossip payload exchanged on join and ping."""

    source: HostPort
    members: list[HostPort] = Field(default_factory=list)


class MeshError(Exception):
    """Base class for errors raised by the mesh and the harness."""


class ChannelDestroyedError(MeshError):
    """Raised when a call is made on or to a closed channel."""


class NoSuchEndpointError(MeshError):
    """Raised when no handler is registered for a service endpoint."""

    def __init__(self, service: ServiceName, endpoint: EndpointName) -> None:
        super().__init__(f"no handler for {service}::{endpoint}")
        self.service = service
        self.endpoint = endpoint


class RequestTimeoutError(MeshError, TimeoutError):
    """Raised when a call does not complete within its timeout."""


class CallError(MeshError):
    """Raised to the caller when a remote handler fails."""


class MembershipError(MeshError):
    """Raised when a membership client cannot join any seed."""


class RegistrationFailure(MeshError):
    """Raised when a remote's first registration with the mesh fails."""

    def __init__(self, service_name: ServiceName, message: str) -> None:
        super().__init__(f"registration of {service_name} failed: {message}")
        self.service_name = service_name
