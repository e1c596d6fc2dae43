"""
Test cluster orchestration.

``ClusterOrchestrator`` owns a ring of relays plus the dummies and remotes
around it. Growth runs in three barrier-separated phases so no relay starts
gossiping with a partial host list:

1. partial bootstrap of every new relay (listen, endpoints, local ring);
2. gossip wiring: every new relay joins the now complete host list;
3. a convergence wait over every relay in the cluster.

Bootstrap is fail-fast and close is best-effort: a test must see the error
that broke its setup, and teardown must never hang or replace the test's own
failure with a teardown error.

Example:
    settings = ClusterSettings(size=5)
    async with ClusterOrchestrator(settings) as cluster:
        cluster.check_exit_k_value("bob", 2)
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Iterator
from enum import Enum
from types import TracebackType
from typing import Any

import ulid
from loguru import logger

from meshcluster.core.assertions import CollapsedAssert
from meshcluster.core.config import ClusterSettings
from meshcluster.core.events import Event
from meshcluster.core.logging import CLUSTER_KEY, LogCapture
from meshcluster.core.model import (
    AdvertisementRequest,
    AdvertisementResponse,
    ServiceAdvertisement,
)
from meshcluster.core.ready_signal import CountedReadySignal, join_all
from meshcluster.core.remote_config import RemoteConfigFile
from meshcluster.datastructures.type_aliases import (
    DurationMilliseconds,
    HostPort,
    JsonBody,
    ServiceName,
)
from meshcluster.fabric.channel import Channel, ChannelOptions, JsonCaller
from meshcluster.fabric.membership import MembershipClient
from meshcluster.fabric.network import LoopbackNetwork, split_host_port
from meshcluster.fabric.relay import (
    ADVERTISE_ENDPOINT,
    HYPERBAHN_SERVICE,
    UNADVERTISE_ENDPOINT,
    RelayNode,
    RelaySettings,
)
from meshcluster.fabric.shards import ExitShard, diff_exit_shards
from meshcluster.fabric.trace_collector import (
    SUBMIT_ENDPOINT,
    TCOLLECTOR_SERVICE,
    FakeTraceCollector,
)

from .convergence import ConvergenceDetector
from .remote import SimulatedRemote
from .watcher import ConnectionWatcher

type NodeFactory = Callable[[RelaySettings, LoopbackNetwork], RelayNode]
type HostPortVisitor = Callable[[str, int, HostPort | None], object]

DEFAULT_LOG_WHITELIST = (
    ("info", "implementing affinity change"),
    ("info", "connecting peers"),
    ("info", "TEST SETUP"),
)


class ClusterState(Enum):
    EMPTY = "empty"
    GROWING = "growing"
    PARTIALLY_BOOTSTRAPPED = "partially_bootstrapped"
    GOSSIP_WIRED = "gossip_wired"
    CONVERGED = "converged"
    CLOSED = "closed"


class ClusterOrchestrator:
    """A ring of relays with dummies and simulated remotes around it."""

    def __init__(
        self,
        settings: ClusterSettings | None = None,
        *,
        network: LoopbackNetwork | None = None,
        node_factory: NodeFactory | None = None,
    ) -> None:
        self.settings = settings or ClusterSettings()
        self.network = network or LoopbackNetwork()
        self.node_factory: NodeFactory = node_factory or RelayNode

        self.size = self.settings.size
        self.dummy_size = self.settings.dummy_size
        self.named_remotes_config = list(self.settings.named_remotes)
        self.remotes_config = self.settings.remotes_config
        self.k_value = self.settings.effective_k_value
        self.remote_config = self.settings.relay_remote_config()
        self.channel_options = ChannelOptions.from_overlay(self.settings.channel_config)

        # The relay ring, in ordinal order
        self.apps: list[RelayNode] = []
        # Passive listening channels
        self.dummies: list[Channel] = []
        # Canonical host list, shared by reference as every relay's seed list
        self.host_port_list: list[HostPort] = []
        self.ringpop_hosts = self.host_port_list

        self.remotes: dict[ServiceName, SimulatedRemote] = {}
        self.named_remotes: list[SimulatedRemote] = []
        self.extra_remotes: list[SimulatedRemote] = []
        self.tcollector: FakeTraceCollector | None = None

        self.cluster_id = str(ulid.new())
        self.caller = JsonCaller()
        self.watcher = ConnectionWatcher(self._exits_for)
        self.state = ClusterState.EMPTY
        self.listening_event = Event("listening")
        self.logs = LogCapture(level="INFO", owner=self.cluster_id)
        for level, message in (*DEFAULT_LOG_WHITELIST, *self.settings.whitelist):
            self.logs.whitelist(level, message)

        self._rng = random.Random()
        self._tasks: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> ClusterOrchestrator:
        try:
            await self.bootstrap()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def bootstrap(self) -> None:
        """Grow to ``size``, then bring up dummies and remotes.

        Returns once every requested actor is ready; ``listening_event``
        fires exactly once at that point.
        """
        self.logs.install()
        with self.log_context():
            await self._bootstrap()

    async def _bootstrap(self) -> None:
        await self.grow(self.size)

        dummies_ready = CountedReadySignal(self.dummy_size)
        self.dummies.extend(
            await join_all(
                self.create_dummy(dummies_ready.signal) for _ in range(self.dummy_size)
            )
        )
        await dummies_ready.wait()

        if not self.settings.no_tcollector:
            tcollector_ready = CountedReadySignal(1)
            tcollector = self._new_remote(TCOLLECTOR_SERVICE)
            self.remotes[TCOLLECTOR_SERVICE] = tcollector
            self.tcollector = FakeTraceCollector(tcollector.channel, self.caller)
            self._spawn(self._start_remote(tcollector, tcollector_ready))
            await tcollector_ready.wait()

        remotes_done = CountedReadySignal(2 + len(self.named_remotes_config))
        for service_name, disabled in (
            ("bob", self.settings.no_bob),
            ("steve", self.settings.no_steve),
        ):
            if disabled:
                remotes_done.signal()
                continue
            remote = self._new_remote(service_name)
            self.remotes[service_name] = remote
            self._spawn(self._start_remote(remote, remotes_done))

        for service_name in self.named_remotes_config:
            remote = self._new_remote(service_name)
            self.named_remotes.append(remote)
            self._spawn(self._start_remote(remote, remotes_done))

        await remotes_done.wait()

        if self.settings.debug_setup:
            self.log_setup()
        self.listening_event.emit()

    async def grow(self, n: int) -> list[RelayNode]:
        """Add ``n`` relays and wait until the whole ring agrees on membership.

        A failure in either bootstrap phase is raised as-is; relays that
        already started are left for ``close`` to tear down.
        """
        with self.log_context():
            return await self._grow(n)

    async def _grow(self, n: int) -> list[RelayNode]:
        self.state = ClusterState.GROWING
        new_apps = self._create_apps(n)

        try:
            await join_all(app.partial_bootstrap() for app in new_apps)
            for app in new_apps:
                if app.host_port is None:
                    raise RuntimeError(
                        f"relay {app.cluster_index} has no address after bootstrap"
                    )
                self.host_port_list.append(app.host_port)
            self.state = ClusterState.PARTIALLY_BOOTSTRAPPED

            await join_all(app.setup_membership(self.host_port_list) for app in new_apps)
            self.state = ClusterState.GOSSIP_WIRED
        except Exception as err:
            logger.error("Failed to grow cluster by {} relays: {!r}", n, err)
            raise

        await self.wait_for_ringpop()
        self.state = ClusterState.CONVERGED
        logger.debug("Cluster converged on {} relays", len(self.apps))
        return new_apps

    async def close(self) -> None:
        """Tear everything down; never raises."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for app in self.apps:
            await self._teardown(app.destroy(), f"relay {app.host_port}")
            if app.remote_config_file is not None:
                try:
                    app.remote_config_file.clear()
                except OSError as err:
                    logger.debug("Ignoring remote config cleanup error: {}", err)

        for dummy in self.dummies:
            if not dummy.destroyed:
                await self._teardown(dummy.close(), f"dummy {dummy.host_port}")

        for remote in (
            *self.remotes.values(),
            *self.named_remotes,
            *self.extra_remotes,
        ):
            await self._teardown(remote.destroy(), f"remote {remote.service_name}")

        self.logs.remove()
        self.state = ClusterState.CLOSED

    def create_application(
        self, host_port: HostPort = "127.0.0.1:0", boot_hosts: list[HostPort] | None = None
    ) -> RelayNode:
        host, port = split_host_port(host_port)
        remote_config_file = RemoteConfigFile(host_port)
        remote_config_file.write(self.remote_config)

        relay_settings = RelaySettings(
            host=host,
            port=port,
            bootstrap_hosts=self.ringpop_hosts if boot_hosts is None else boot_hosts,
            remote_config_path=remote_config_file.file_path,
            k_value=self.k_value,
            gossip_interval=self.settings.gossip_interval,
            channel_options=self.channel_options,
        )
        app = self.node_factory(relay_settings, self.network)
        app.remote_config_file = remote_config_file
        return app

    async def create_dummy(self, on_listening: Callable[..., object] | None = None) -> Channel:
        dummy = Channel(self.network, options=self.channel_options, name="dummy")
        if on_listening is None:
            await dummy.listen()
            return dummy
        with dummy.listening_event.subscribe(on_listening):
            await dummy.listen()
        return dummy

    async def create_remote(
        self,
        service_name: ServiceName,
        *,
        register_every: DurationMilliseconds | None = None,
    ) -> SimulatedRemote:
        """Start an extra remote and wait for it to be ready.

        The remote is destroyed by ``close``.
        """
        remote = self._new_remote(service_name, register_every=register_every)
        self.extra_remotes.append(remote)
        with self.log_context():
            try:
                await remote.start()
            except Exception as err:
                logger.error("Failed to initialize remote {}: {}", service_name, err)
                raise
        return remote

    def log_context(self) -> contextlib.AbstractContextManager[None]:
        """Tag log records, and the tasks started meanwhile, with this cluster."""
        return logger.contextualize(**{CLUSTER_KEY: self.cluster_id})

    async def report_span(self, channel: Channel, span: JsonBody) -> None:
        """Submit one span to the cluster's trace collector, if it has one."""
        if self.tcollector is None or self.tcollector.channel.host_port is None:
            return
        await self.caller.send(
            channel,
            self.tcollector.channel.host_port,
            TCOLLECTOR_SERVICE,
            SUBMIT_ENDPOINT,
            {"spans": [span]},
            timeout=self.settings.request_timeout / 1000.0,
            retry_limit=0,
        )

    # Convergence

    def convergence_detector(self) -> ConvergenceDetector:
        return ConvergenceDetector(self._memberships(), self.host_port_list)

    async def wait_for_ringpop(self) -> None:
        await self.convergence_detector().wait()

    def is_ringpop_converged(self) -> bool:
        return self.convergence_detector().is_converged()

    # Shard verification

    def get_exit_nodes(self, service_name: ServiceName) -> list[RelayNode]:
        membership = self._memberships()[0]
        hosts: list[HostPort] = []
        for i in range(self.k_value):
            host = membership.lookup(f"{service_name}~{i}")
            if host is not None and host not in hosts:
                hosts.append(host)
        return [app for app in self.apps if app.host_port in hosts]

    def check_exit_k_value(
        self,
        service_name: ServiceName,
        k_value: int,
        *,
        assertion: CollapsedAssert | None = None,
    ) -> None:
        """Every relay reports the same exit shard, holding ``k_value`` keys."""
        if not service_name:
            raise ValueError("service_name required")
        if not k_value:
            raise ValueError("k_value required")

        cassert = CollapsedAssert()
        exit_shard = self._exits_for(service_name)
        shard_keys = [key for keys in exit_shard.values() for key in keys]
        cassert.equal(len(shard_keys), k_value, "exitNode has kValue number of keys")

        for app in self.apps:
            problems = diff_exit_shards(exit_shard, app.exits_for(service_name))
            message = f"cluster application {app.host_port} has same shards as everyone else"
            if problems:
                message = f"{message} ({'; '.join(problems)})"
            cassert.ok(not problems, message)

        cassert.report(f"exit kValue is correct for {service_name}", into=assertion)

    def check_exit_peers(
        self,
        service_name: ServiceName,
        host_port: HostPort,
        *,
        black_list: Iterable[HostPort] = (),
        assertion: CollapsedAssert | None = None,
    ) -> None:
        """Every exit relay for ``service_name`` holds ``host_port`` as a peer."""
        if not service_name:
            raise ValueError("service_name required")
        if not host_port:
            raise ValueError("host_port required")

        cassert = CollapsedAssert()
        exit_shard = self._exits_for(service_name)
        excluded = set(black_list)
        exit_apps = [
            app
            for app in self.apps
            if app.host_port in exit_shard and app.host_port not in excluded
        ]
        for i, exit_app in enumerate(exit_apps):
            cassert.comment(f"--- check peers for exitApp[{i}]")
            exit_app.check_exit_peers(cassert, service_name, host_port)

        cassert.report(f"exit peers are correct for {service_name}", into=assertion)

    # Connection lifecycle

    async def until_exits_connected(self, service_name: ServiceName, channel: Channel) -> None:
        await self.watcher.until_connected(service_name, channel)

    async def until_exits_connected_except(
        self,
        service_name: ServiceName,
        channel: Channel,
        except_hosts: Iterable[HostPort],
    ) -> None:
        await self.watcher.until_connected(service_name, channel, except_hosts)

    async def until_exits_disconnected(
        self, service_name: ServiceName, channel: Channel
    ) -> None:
        await self.watcher.until_disconnected(service_name, channel)

    # Advertisement traffic

    async def send_register(
        self,
        channel: Channel,
        service_name: ServiceName,
        *,
        host: HostPort | None = None,
        timeout: DurationMilliseconds | None = None,
    ) -> AdvertisementResponse:
        request = AdvertisementRequest(
            services=[ServiceAdvertisement(service_name=service_name, cost=0)]
        )
        reply = await self.send_hyperbahn(
            channel,
            ADVERTISE_ENDPOINT,
            request.to_body(),
            service_name=service_name,
            host=host,
            timeout=timeout,
        )
        return AdvertisementResponse.model_validate(reply)

    async def send_unregister(
        self,
        channel: Channel,
        service_name: ServiceName,
        *,
        host: HostPort | None = None,
        timeout: DurationMilliseconds | None = None,
    ) -> AdvertisementResponse:
        request = AdvertisementRequest(
            services=[ServiceAdvertisement(service_name=service_name)]
        )
        reply = await self.send_hyperbahn(
            channel,
            UNADVERTISE_ENDPOINT,
            request.to_body(),
            service_name=service_name,
            host=host,
            timeout=timeout,
        )
        return AdvertisementResponse.model_validate(reply)

    async def send_hyperbahn(
        self,
        channel: Channel,
        endpoint: str,
        body: JsonBody,
        *,
        service_name: ServiceName,
        host: HostPort | None = None,
        timeout: DurationMilliseconds | None = None,
    ) -> JsonBody:
        """Call a ``hyperbahn`` endpoint exactly once.

        Without ``host`` a relay is picked from the host list; with ``host``
        the call waits for an identified connection to that relay first.
        """
        if not service_name:
            raise ValueError("need a serviceName to call hyperbahn")
        if host is not None:
            await channel.wait_for_identified(host)
            target = host
        else:
            if not self.host_port_list:
                raise RuntimeError("cluster has no relays to call")
            target = self._rng.choice(self.host_port_list)

        timeout_ms = self.settings.request_timeout if timeout is None else timeout
        return await self.caller.send(
            channel,
            target,
            HYPERBAHN_SERVICE,
            endpoint,
            body,
            headers={"cn": service_name},
            timeout=timeout_ms / 1000.0,
            retry_limit=0,
        )

    # Diagnostics

    def iter_host_ports(self) -> Iterator[tuple[str, int, HostPort | None]]:
        for i, host_port in enumerate(self.host_port_list):
            yield "relay", i, host_port
        for i, dummy in enumerate(self.dummies):
            yield "dummy", i, dummy.host_port
        for name, remote in self.remotes.items():
            yield name, 0, remote.host_port
        for i, remote in enumerate(self.named_remotes):
            yield "namedRemote", i, remote.host_port

    def for_each_host_port(self, visitor: HostPortVisitor) -> None:
        for role, index, host_port in self.iter_host_ports():
            visitor(role, index, host_port)

    def log_setup(self) -> None:
        for role, index, host_port in self.iter_host_ports():
            logger.info("TEST SETUP: {}{} {}", role.upper(), index, host_port)

    def _create_apps(self, n: int) -> list[RelayNode]:
        new_apps: list[RelayNode] = []
        start = len(self.apps)
        for index in range(start, start + n):
            app = self.create_application()
            app.cluster_index = index
            self.apps.append(app)
            new_apps.append(app)
        return new_apps

    def _memberships(self) -> list[MembershipClient]:
        memberships = []
        for app in self.apps:
            if app.membership is None:
                raise RuntimeError(f"relay {app.cluster_index} has no membership client")
            memberships.append(app.membership)
        return memberships

    def _exits_for(self, service_name: ServiceName) -> ExitShard:
        if not self.apps:
            raise RuntimeError("cluster has no relays")
        return self.apps[0].exits_for(service_name)

    def _new_remote(
        self,
        service_name: ServiceName,
        *,
        register_every: DurationMilliseconds | None = None,
    ) -> SimulatedRemote:
        interval = (
            self.settings.register_every_for(service_name)
            if register_every is None
            else register_every
        )
        return SimulatedRemote(
            self,
            service_name=service_name,
            register_every=interval,
            trace=service_name != TCOLLECTOR_SERVICE
            and self.settings.trace_for(service_name),
        )

    async def _start_remote(
        self,
        remote: SimulatedRemote,
        ready: CountedReadySignal,
    ) -> None:
        try:
            await remote.start()
        except Exception as err:
            logger.error("Failed to initialize remote {}: {}", remote.service_name, err)
            ready.fail(err)
            return
        ready.signal()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _teardown(self, closing: Awaitable[None], what: str) -> None:
        try:
            await closing
        except Exception as err:
            logger.debug("Ignoring teardown error for {}: {!r}", what, err)
