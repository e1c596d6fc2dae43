"""
Connection lifecycle waits between a channel and a service's exit relays.

``until_connected`` resolves once every expected exit relay has an
identified inbound connection on the watched channel; it only counts
inbound connections because the point is to see the relays dial back, not
that the channel dialed them. ``until_disconnected`` resolves once every
connection that existed to an exit relay when the wait started has closed
or errored.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Iterable

from loguru import logger

from meshcluster.datastructures.type_aliases import HostPort, ServiceName
from meshcluster.fabric.channel import Channel, Connection, ConnectionDirection
from meshcluster.fabric.shards import ExitShard

type ExitSource = Callable[[ServiceName], ExitShard]


class _CloseWatch:
    """Fires ``listener`` once for the first of close or error on ``conn``."""

    def __init__(self, conn: Connection, listener: Callable[[Connection], None]):
        self.conn = conn
        self.listener = listener
        self.done = False
        self._stack = contextlib.ExitStack()
        self._stack.enter_context(conn.error_event.subscribe(self._on_event))
        self._stack.enter_context(conn.close_event.subscribe(self._on_event))

    def _on_event(self, *_: object) -> None:
        if self.done:
            return
        self.done = True
        self._stack.close()
        self.listener(self.conn)

    def __enter__(self) -> _CloseWatch:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stack.close()


class ConnectionWatcher:
    """Connection waits driven by a node's exit shard for a service."""

    def __init__(self, exits_for: ExitSource) -> None:
        self.exits_for = exits_for

    async def until_connected(
        self,
        service_name: ServiceName,
        channel: Channel,
        except_hosts: Iterable[HostPort] = (),
    ) -> None:
        exits = self.exits_for(service_name)
        excluded = set(except_hosts)
        pending = {host for host in exits if host not in excluded}
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        with contextlib.ExitStack() as subscriptions:

            def check_conns(*_: object) -> None:
                if future.done():
                    return
                for peer in channel.peers.values():
                    if peer.host_port not in exits:
                        continue
                    if any(
                        conn.direction is ConnectionDirection.IN
                        for conn in peer.connections
                    ):
                        pending.discard(peer.host_port)
                if not pending:
                    subscriptions.close()
                    future.set_result(None)

            def on_conn(conn: Connection) -> None:
                subscriptions.enter_context(conn.identified_event.subscribe(check_conns))

            subscriptions.enter_context(channel.connection_event.subscribe(on_conn))
            for conn in list(channel.server_connections.values()):
                if conn.remote_name is None:
                    subscriptions.enter_context(
                        conn.identified_event.subscribe(check_conns)
                    )

            check_conns()
            if not future.done():
                logger.debug(
                    "[{}] Waiting for {} exits of {} to connect",
                    channel.host_port,
                    len(pending),
                    service_name,
                )
            await future

    async def until_disconnected(self, service_name: ServiceName, channel: Channel) -> None:
        exits = self.exits_for(service_name)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        count = 1

        def on_conn_close(*_: object) -> None:
            nonlocal count
            count -= 1
            if count <= 0 and not future.done():
                future.set_result(None)

        with contextlib.ExitStack() as watches:
            for peer in channel.peers.values():
                if peer.host_port not in exits:
                    continue
                for conn in list(peer.connections):
                    count += 1
                    watches.enter_context(_CloseWatch(conn, on_conn_close))

            loop.call_soon(on_conn_close)
            await future
