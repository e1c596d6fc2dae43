"""
Loopback relay: one mesh node in the test cluster's ring.

Startup is split in two so a cluster can put a barrier between them:

- ``partial_bootstrap`` loads the relay's remote config file, starts
  listening, registers the ``hyperbahn`` endpoints and creates the
  membership client (which only knows itself).
- ``setup_membership`` joins the bootstrap host list and starts gossip.

Service advertisement: a remote calls ``hyperbahn::ad`` on any relay (the
entry relay). The entry relay computes the exit relays for each advertised
service from its own ring and forwards a ``relay-ad`` to each of them. Every
exit relay records the remote as a service peer and dials it, so the remote
sees one inbound connection per exit relay. ``unad``/``relay-unad`` reverse
this: the exit relays forget the peer and close their connections to it.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from loguru import logger

from meshcluster.core.assertions import CollapsedAssert
from meshcluster.core.config import K_VALUE_CONFIG_KEY
from meshcluster.core.events import Event
from meshcluster.core.model import (
    AdvertisementRequest,
    AdvertisementResponse,
    RelayedService,
    RelayRequest,
)
from meshcluster.core.ready_signal import join_all
from meshcluster.core.remote_config import RemoteConfigFile
from meshcluster.datastructures.type_aliases import (
    ConfigOverlay,
    DurationSeconds,
    HostAddress,
    HostPort,
    JsonBody,
    PortNumber,
    ServiceName,
)

from .channel import (
    CallRequest,
    Channel,
    ChannelOptions,
    ConnectionDirection,
    JsonCaller,
)
from .membership import MembershipClient
from .network import LoopbackNetwork
from .shards import ExitShard, ShardResolver

HYPERBAHN_SERVICE = "hyperbahn"
ADVERTISE_ENDPOINT = "ad"
UNADVERTISE_ENDPOINT = "unad"
RELAY_ADVERTISE_ENDPOINT = "relay-ad"
RELAY_UNADVERTISE_ENDPOINT = "relay-unad"


class RelayState(Enum):
    CREATED = "created"
    LISTENING = "listening"
    GOSSIPING = "gossiping"
    DESTROYED = "destroyed"


@dataclass(slots=True)
class RelaySettings:
    """Construction parameters for one relay."""

    host: HostAddress = "127.0.0.1"
    port: PortNumber = 0
    bootstrap_hosts: list[HostPort] | None = None
    remote_config_path: Path | None = None
    k_value: int = 1
    gossip_interval: DurationSeconds = 0.05
    channel_options: ChannelOptions = field(default_factory=ChannelOptions)


class RelayNode:
    """A routing-mesh node backed by a loopback channel."""

    def __init__(self, settings: RelaySettings, network: LoopbackNetwork) -> None:
        self.settings = settings
        self.network = network
        self.channel = Channel(network, options=settings.channel_options, name="relay")
        self.caller = JsonCaller()
        self.host_port: HostPort | None = None
        self.cluster_index: int | None = None
        self.membership: MembershipClient | None = None
        self.remote_config: ConfigOverlay = {}
        self.remote_config_file: RemoteConfigFile | None = None
        self.service_peers: dict[ServiceName, set[HostPort]] = {}
        self.advertise_event = Event("advertise")
        self.advertise_count = 0
        self.state = RelayState.CREATED

    @property
    def k_value(self) -> int:
        value = self.remote_config.get(K_VALUE_CONFIG_KEY)
        return int(value) if value else self.settings.k_value

    async def partial_bootstrap(self) -> None:
        if self.settings.remote_config_path is not None:
            self.remote_config = RemoteConfigFile.load(self.settings.remote_config_path)

        self.host_port = await self.channel.listen(self.settings.port, self.settings.host)

        register = self.caller.register
        register(self.channel, HYPERBAHN_SERVICE, ADVERTISE_ENDPOINT, self._handle_advertise)
        register(
            self.channel, HYPERBAHN_SERVICE, UNADVERTISE_ENDPOINT, self._handle_unadvertise
        )
        register(
            self.channel,
            HYPERBAHN_SERVICE,
            RELAY_ADVERTISE_ENDPOINT,
            self._handle_relay_advertise,
        )
        register(
            self.channel,
            HYPERBAHN_SERVICE,
            RELAY_UNADVERTISE_ENDPOINT,
            self._handle_relay_unadvertise,
        )

        self.membership = MembershipClient(
            self.channel,
            self.caller,
            gossip_interval=self.settings.gossip_interval,
        )
        self.state = RelayState.LISTENING
        logger.debug("[{}] Relay partially bootstrapped", self.host_port)

    async def setup_membership(self, bootstrap_hosts: list[HostPort] | None = None) -> None:
        if self.membership is None or self.host_port is None:
            raise RuntimeError("setup_membership() requires partial_bootstrap() first")
        hosts = bootstrap_hosts
        if hosts is None:
            hosts = self.settings.bootstrap_hosts or [self.host_port]
        await self.membership.bootstrap(hosts)
        self.state = RelayState.GOSSIPING

    async def destroy(self) -> None:
        if self.state is RelayState.DESTROYED:
            return
        self.state = RelayState.DESTROYED
        if self.membership is not None:
            await self.membership.destroy()
        await self.channel.close()

    def exits_for(self, service_name: ServiceName) -> ExitShard:
        if self.membership is None:
            raise RuntimeError("relay has no membership view yet")
        return ShardResolver(self.membership, self.k_value).exits_for(service_name)

    def check_exit_peers(
        self, cassert: CollapsedAssert, service_name: ServiceName, host_port: HostPort
    ) -> None:
        """Record whether this relay acts as an exit for ``host_port``."""
        peers = self.service_peers.get(service_name, set())
        cassert.ok(
            host_port in peers,
            f"exit {self.host_port} has {service_name} peer {host_port}",
        )
        peer = self.channel.peers.get(host_port)
        connected = (
            peer is not None
            and peer.identified_connection(ConnectionDirection.OUT) is not None
        )
        cassert.ok(connected, f"exit {self.host_port} is connected to {host_port}")

    async def _handle_advertise(self, body: JsonBody, call: CallRequest) -> JsonBody:
        request = AdvertisementRequest.model_validate(body)
        self.advertise_count += 1
        self.advertise_event.emit(call.caller, request)
        count = await self._fan_out(RELAY_ADVERTISE_ENDPOINT, call.caller, request)
        return AdvertisementResponse(connection_count=count).model_dump(by_alias=True)

    async def _handle_unadvertise(self, body: JsonBody, call: CallRequest) -> JsonBody:
        request = AdvertisementRequest.model_validate(body)
        count = await self._fan_out(RELAY_UNADVERTISE_ENDPOINT, call.caller, request)
        return AdvertisementResponse(connection_count=count).model_dump(by_alias=True)

    async def _handle_relay_advertise(self, body: JsonBody, call: CallRequest) -> JsonBody:
        for service in RelayRequest.model_validate(body).services:
            self._accept_service_peer(service.service_name, service.host_port)
        return {}

    async def _handle_relay_unadvertise(
        self, body: JsonBody, call: CallRequest
    ) -> JsonBody:
        for service in RelayRequest.model_validate(body).services:
            self._drop_service_peer(service.service_name, service.host_port)
        return {}

    async def _fan_out(
        self, endpoint: str, host_port: HostPort, request: AdvertisementRequest
    ) -> int:
        by_exit: defaultdict[HostPort, list[RelayedService]] = defaultdict(list)
        for service in request.services:
            for exit_host in self.exits_for(service.service_name):
                by_exit[exit_host].append(
                    RelayedService(service_name=service.service_name, host_port=host_port)
                )
        await join_all(
            self._relay(exit_host, endpoint, RelayRequest(services=services))
            for exit_host, services in by_exit.items()
        )
        return len(by_exit)

    async def _relay(self, exit_host: HostPort, endpoint: str, request: RelayRequest) -> None:
        if exit_host == self.host_port:
            for service in request.services:
                if endpoint == RELAY_ADVERTISE_ENDPOINT:
                    self._accept_service_peer(service.service_name, service.host_port)
                else:
                    self._drop_service_peer(service.service_name, service.host_port)
            return
        await self.caller.send(
            self.channel, exit_host, HYPERBAHN_SERVICE, endpoint, request.to_body()
        )

    def _accept_service_peer(self, service_name: ServiceName, host_port: HostPort) -> None:
        peers = self.service_peers.setdefault(service_name, set())
        if host_port not in peers:
            peers.add(host_port)
            logger.info(
                "implementing affinity change: {} gains {} on {}",
                service_name,
                host_port,
                self.host_port,
            )
        peer = self.channel.peers.get(host_port)
        if peer is None or not peer.has_direction(ConnectionDirection.OUT):
            logger.info("connecting peers: {} -> {}", self.host_port, host_port)
            self.channel.connect(host_port)

    def _drop_service_peer(self, service_name: ServiceName, host_port: HostPort) -> None:
        peers = self.service_peers.get(service_name)
        if peers is None or host_port not in peers:
            return
        peers.discard(host_port)
        if not peers:
            del self.service_peers[service_name]
        logger.info(
            "implementing affinity change: {} drops {} on {}",
            service_name,
            host_port,
            self.host_port,
        )
        if any(host_port in remaining for remaining in self.service_peers.values()):
            return
        peer = self.channel.peers.get(host_port)
        if peer is not None:
            for conn in list(peer.connections):
                conn.close()
