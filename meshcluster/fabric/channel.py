"""
Loopback channels: connections, peers, and request/response calls.

A ``Channel`` listens on a ``LoopbackNetwork`` address and can dial other
channels. Dialing creates a pair of connections, ``out`` on the dialer and
``in`` on the listener. The listener announces the new connection on its
``connection_event`` immediately; both ends identify each other on the next
loop iteration, which fires each connection's ``identified_event`` and files
it in the channel's peer registry.

Calls are dispatched to handlers registered per ``(service, endpoint)`` on
the receiving channel. ``JsonCaller`` layers JSON bodies on top of the raw
byte calls.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import ulid
from loguru import logger

from meshcluster.core.events import Event
from meshcluster.core.model import (
    CallError,
    ChannelDestroyedError,
    MeshError,
    NoSuchEndpointError,
    RequestTimeoutError,
)
from meshcluster.core.serialization import JsonSerializer, Serializer
from meshcluster.datastructures.type_aliases import (
    CallHeaders,
    ConnectionId,
    DurationSeconds,
    EndpointName,
    HostAddress,
    HostPort,
    JsonBody,
    PortNumber,
    ServiceName,
)

from .network import LoopbackNetwork


class ConnectionDirection(Enum):
    IN = "in"
    OUT = "out"


@dataclass(frozen=True, slots=True)
class ChannelOptions:
    """Per-channel call defaults; a test config overlay may replace them."""

    request_timeout: DurationSeconds = 5.0
    retry_limit: int = 1

    @classmethod
    def from_overlay(cls, overlay: Mapping[str, Any] | None) -> ChannelOptions:
        if not overlay:
            return cls()
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in overlay.items() if key in known})


@dataclass(frozen=True, slots=True)
class IdentificationInfo:
    host_port: HostPort
    process_name: str = ""


@dataclass(slots=True)
class CallRequest:
    """An inbound call as seen by a handler."""

    service: ServiceName
    endpoint: EndpointName
    body: bytes
    caller: HostPort
    headers: dict[str, str] = field(default_factory=dict)
    connection: Connection | None = None
    id: str = field(default_factory=lambda: str(ulid.new()))


type CallHandler = Callable[[CallRequest], Awaitable[bytes]]


class Connection:
    """One end of a loopback connection."""

    def __init__(
        self,
        channel: Channel,
        direction: ConnectionDirection,
        remote_address: HostPort | None = None,
    ) -> None:
        self.id: ConnectionId = str(ulid.new())
        self.channel = channel
        self.direction = direction
        self.remote_address = remote_address
        self.remote_name: HostPort | None = None
        self.partner: Connection | None = None
        self.closed = False
        self.identified_event = Event("identified")
        self.close_event = Event("close")
        self.error_event = Event("error")

    @property
    def identified(self) -> bool:
        return self.remote_name is not None

    def identify(self, info: IdentificationInfo) -> None:
        if self.closed or self.remote_name is not None:
            return
        self.remote_name = info.host_port
        self.remote_address = info.host_port
        self.channel._on_identified(self)
        self.identified_event.emit(info, self)

    def reset(self, error: BaseException) -> None:
        """Fail the connection: ``error_event`` first, then a normal close."""
        if self.closed:
            return
        self.error_event.emit(error, self)
        self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.channel._on_connection_closed(self)
        self.close_event.emit(self)
        if self.partner is not None:
            self.partner.close()

    def __repr__(self) -> str:
        return (
            f"Connection({self.direction.value} {self.channel.host_port}"
            f" <-> {self.remote_address}, identified={self.identified})"
        )


class Peer:
    """All connections a channel holds to one remote address."""

    def __init__(self, host_port: HostPort) -> None:
        self.host_port = host_port
        self.connections: list[Connection] = []

    def identified_connection(
        self, direction: ConnectionDirection | None = None
    ) -> Connection | None:
        for conn in self.connections:
            if conn.identified and (direction is None or conn.direction is direction):
                return conn
        return None

    def pending_connection(self) -> Connection | None:
        for conn in self.connections:
            if not conn.identified and not conn.closed:
                return conn
        return None

    def has_direction(self, direction: ConnectionDirection) -> bool:
        return any(conn.direction is direction for conn in self.connections)


class PeerRegistry:
    def __init__(self) -> None:
        self._peers: dict[HostPort, Peer] = {}

    def get(self, host_port: HostPort) -> Peer | None:
        return self._peers.get(host_port)

    def add(self, host_port: HostPort) -> Peer:
        peer = self._peers.get(host_port)
        if peer is None:
            peer = Peer(host_port)
            self._peers[host_port] = peer
        return peer

    def remove(self, host_port: HostPort) -> None:
        self._peers.pop(host_port, None)

    def values(self) -> list[Peer]:
        return list(self._peers.values())

    def keys(self) -> list[HostPort]:
        return list(self._peers)

    def __contains__(self, host_port: object) -> bool:
        return host_port in self._peers

    def __len__(self) -> int:
        return len(self._peers)


class Channel:
    """A listening endpoint on the loopback network."""

    def __init__(
        self,
        network: LoopbackNetwork,
        *,
        options: ChannelOptions | None = None,
        name: str = "channel",
    ) -> None:
        self.network = network
        self.options = options or ChannelOptions()
        self.name = name
        self.host_port: HostPort | None = None
        self.destroyed = False
        self.peers = PeerRegistry()
        self.server_connections: dict[ConnectionId, Connection] = {}
        self.connection_event = Event("connection")
        self.listening_event = Event("listening")
        self._handlers: dict[tuple[ServiceName, EndpointName], CallHandler] = {}

    async def listen(
        self, port: PortNumber = 0, host: HostAddress = "127.0.0.1"
    ) -> HostPort:
        self._ensure_open()
        if self.host_port is not None:
            raise RuntimeError(f"{self.name} is already listening on {self.host_port}")
        self.host_port = self.network.bind(self, host, port)
        self.listening_event.emit(self.host_port)
        return self.host_port

    def register(
        self, service: ServiceName, endpoint: EndpointName, handler: CallHandler
    ) -> None:
        self._handlers[(service, endpoint)] = handler

    def connect(self, host_port: HostPort) -> Connection:
        """Dial ``host_port``; identification completes on the next loop turn."""
        self._ensure_open()
        if self.host_port is None:
            raise RuntimeError(f"{self.name} must listen before dialing {host_port}")
        target = self.network.resolve(host_port)

        outbound = Connection(self, ConnectionDirection.OUT, remote_address=host_port)
        inbound = Connection(target, ConnectionDirection.IN)
        outbound.partner = inbound
        inbound.partner = outbound

        self.peers.add(host_port).connections.append(outbound)
        target._accept(inbound)
        asyncio.get_running_loop().call_soon(self._handshake, outbound, inbound)
        logger.debug("[{}] Dialing {}", self.host_port, host_port)
        return outbound

    async def wait_for_identified(self, host_port: HostPort) -> Connection:
        """Return an identified connection to ``host_port``, dialing if needed."""
        self._ensure_open()
        peer = self.peers.get(host_port)
        pending = None
        if peer is not None:
            conn = peer.identified_connection()
            if conn is not None:
                return conn
            pending = peer.pending_connection()
        if pending is None:
            pending = self.connect(host_port)

        future: asyncio.Future[Connection] = asyncio.get_running_loop().create_future()

        def on_identified(info: IdentificationInfo, conn: Connection) -> None:
            if not future.done():
                future.set_result(conn)

        def on_close(conn: Connection) -> None:
            if not future.done():
                future.set_exception(
                    ConnectionResetError(f"connection to {host_port} closed")
                )

        with (
            pending.identified_event.subscribe(on_identified),
            pending.close_event.subscribe(on_close),
        ):
            return await future

    async def request(
        self,
        host_port: HostPort,
        service: ServiceName,
        endpoint: EndpointName,
        body: bytes = b"",
        *,
        headers: CallHeaders | None = None,
        timeout: DurationSeconds | None = None,
        retry_limit: int | None = None,
    ) -> bytes:
        """Call ``service::endpoint`` on ``host_port`` and return the raw reply.

        Timeouts and connection failures are retried up to ``retry_limit``
        times; a ``retry_limit`` of 0 delivers the call at most once.
        """
        timeout = self.options.request_timeout if timeout is None else timeout
        retry_limit = self.options.retry_limit if retry_limit is None else retry_limit

        attempt = 0
        while True:
            self._ensure_open()
            try:
                async with asyncio.timeout(timeout):
                    return await self._send(
                        host_port, service, endpoint, body, dict(headers or {})
                    )
            except TimeoutError as err:
                if attempt >= retry_limit:
                    if isinstance(err, RequestTimeoutError):
                        raise
                    raise RequestTimeoutError(
                        f"request to {service}::{endpoint} on {host_port}"
                        f" timed out after {timeout}s"
                    ) from err
            except ConnectionError:
                if attempt >= retry_limit:
                    raise
            attempt += 1
            logger.debug(
                "[{}] Retrying {}::{} on {} (attempt {})",
                self.host_port,
                service,
                endpoint,
                host_port,
                attempt + 1,
            )

    async def close(self) -> None:
        if self.destroyed:
            return
        self.destroyed = True
        connections = list(self.server_connections.values())
        for peer in self.peers.values():
            connections.extend(peer.connections)
        for conn in connections:
            conn.close()
        if self.host_port is not None:
            self.network.unbind(self.host_port)
        self._handlers.clear()
        logger.debug("[{}] Closed {}", self.host_port, self.name)

    def _ensure_open(self) -> None:
        if self.destroyed:
            raise ChannelDestroyedError(f"{self.name} ({self.host_port}) is closed")

    async def _send(
        self,
        host_port: HostPort,
        service: ServiceName,
        endpoint: EndpointName,
        body: bytes,
        headers: dict[str, str],
    ) -> bytes:
        conn = await self.wait_for_identified(host_port)
        target = self.network.resolve(host_port)
        assert self.host_port is not None
        call = CallRequest(
            service=service,
            endpoint=endpoint,
            body=body,
            caller=self.host_port,
            headers=headers,
            connection=conn.partner,
        )
        return await target._dispatch(call)

    async def _dispatch(self, call: CallRequest) -> bytes:
        self._ensure_open()
        handler = self._handlers.get((call.service, call.endpoint))
        if handler is None:
            raise NoSuchEndpointError(call.service, call.endpoint)
        try:
            return await handler(call)
        except MeshError:
            raise
        except Exception as err:
            raise CallError(
                f"{call.service}::{call.endpoint} on {self.host_port} failed: {err}"
            ) from err

    def _accept(self, conn: Connection) -> None:
        self.server_connections[conn.id] = conn
        self.connection_event.emit(conn)

    def _handshake(self, outbound: Connection, inbound: Connection) -> None:
        if outbound.closed or inbound.closed:
            return
        assert self.host_port is not None
        target_host_port = inbound.channel.host_port
        assert target_host_port is not None
        inbound.identify(IdentificationInfo(self.host_port, self.name))
        outbound.identify(IdentificationInfo(target_host_port, inbound.channel.name))

    def _on_identified(self, conn: Connection) -> None:
        if conn.direction is ConnectionDirection.IN and conn.remote_name is not None:
            self.peers.add(conn.remote_name).connections.append(conn)

    def _on_connection_closed(self, conn: Connection) -> None:
        self.server_connections.pop(conn.id, None)
        address = conn.remote_name or conn.remote_address
        if address is None:
            return
        peer = self.peers.get(address)
        if peer is not None and conn in peer.connections:
            peer.connections.remove(conn)


class JsonCaller:
    """JSON bodies over ``Channel.request``."""

    def __init__(self, serializer: Serializer | None = None) -> None:
        self.serializer = serializer or JsonSerializer()

    async def send(
        self,
        channel: Channel,
        host_port: HostPort,
        service: ServiceName,
        endpoint: EndpointName,
        body: JsonBody,
        *,
        headers: CallHeaders | None = None,
        timeout: DurationSeconds | None = None,
        retry_limit: int | None = None,
    ) -> JsonBody:
        raw = await channel.request(
            host_port,
            service,
            endpoint,
            self.serializer.serialize(body),
            headers=headers,
            timeout=timeout,
            retry_limit=retry_limit,
        )
        return self.serializer.deserialize(raw)

    def register(
        self,
        channel: Channel,
        service: ServiceName,
        endpoint: EndpointName,
        handler: Callable[[JsonBody, CallRequest], Awaitable[JsonBody]],
    ) -> None:
        async def handle(call: CallRequest) -> bytes:
            result = await handler(self.serializer.deserialize(call.body), call)
            return self.serializer.serialize(result)

        channel.register(service, endpoint, handle)
