"""
Simulated remote services.

A ``SimulatedRemote`` is a channel outside the relay ring that advertises a
service name to the mesh. Its first registration decides whether the remote
is usable at all; after that it can re-register on a timer, where failures
are only logged and the timer is always re-armed. An explicit unregister
withdraws the remote: the timer stays off until ``register_every`` or
``do_register`` is called again.

A tracing remote reports one span per ``ad``/``unad`` call to the cluster's
trace collector.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable
from enum import Enum
from typing import TYPE_CHECKING

import ulid
from loguru import logger

from meshcluster.core.model import (
    AdvertisementResponse,
    MeshError,
    RegistrationFailure,
)
from meshcluster.datastructures.type_aliases import (
    DurationMilliseconds,
    HostPort,
    JsonBody,
    ServiceName,
)
from meshcluster.fabric.channel import CallRequest, Channel
from meshcluster.fabric.relay import (
    ADVERTISE_ENDPOINT,
    HYPERBAHN_SERVICE,
    UNADVERTISE_ENDPOINT,
)

if TYPE_CHECKING:
    from .cluster import ClusterOrchestrator

REGISTRATION_ERRORS = (MeshError, ConnectionError, TimeoutError)


class RegistrationState(Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    REREGISTERING = "reregistering"


class SimulatedRemote:
    """A service endpoint that registers itself with the cluster's relays."""

    def __init__(
        self,
        cluster: ClusterOrchestrator,
        *,
        service_name: ServiceName,
        register_every: DurationMilliseconds = 0,
        trace: bool = False,
    ) -> None:
        self.cluster = cluster
        self.service_name = service_name
        self.trace = trace
        self.channel = Channel(
            cluster.network, options=cluster.channel_options, name=service_name
        )
        self.channel.register(service_name, "echo", self._echo)

        self.host_port: HostPort | None = None
        self.register_every_ms = register_every
        self.register_every_interval: DurationMilliseconds = 0
        self.register_timer: asyncio.TimerHandle | None = None
        self.first_registration = True
        self.state = RegistrationState.UNREGISTERED
        self.registration_count = 0
        self.destroyed = False
        self.withdrawn = False
        self._register_task: asyncio.Task[None] | None = None

    @property
    def has_register_timer(self) -> bool:
        return self.register_timer is not None and not self.register_timer.cancelled()

    @property
    def registration_pending(self) -> bool:
        """A re-registration is either scheduled or in flight."""
        in_flight = self._register_task is not None and not self._register_task.done()
        return self.has_register_timer or in_flight

    async def start(self) -> None:
        """Listen, register, and wait for the exit relays to connect back.

        Raises ``RegistrationFailure`` if the first registration fails.
        """
        self.host_port = await self.channel.listen()
        self.state = RegistrationState.REGISTERING
        try:
            await self._send_register()
        except REGISTRATION_ERRORS as err:
            self.state = RegistrationState.UNREGISTERED
            raise RegistrationFailure(self.service_name, str(err)) from err

        self.first_registration = False
        self.state = RegistrationState.REGISTERED
        if self.register_every_ms:
            self.register_every(self.register_every_ms)
        await self.cluster.until_exits_connected(self.service_name, self.channel)
        logger.debug("[{}] Remote {} is ready", self.host_port, self.service_name)

    def register_every(self, interval: DurationMilliseconds) -> None:
        self.withdrawn = False
        self.register_every_interval = interval
        self._clear_timer()
        self._arm_timer()

    def do_register(self) -> None:
        self._clear_timer()
        if self.destroyed or self.channel.destroyed:
            return
        if self._register_task is not None and not self._register_task.done():
            return
        self.withdrawn = False
        self._register_task = asyncio.create_task(self._reregister())

    async def do_unregister(self) -> AdvertisementResponse | None:
        """Withdraw the service; no re-registration follows."""
        self.withdrawn = True
        self._clear_timer()
        await self._cancel_register_task()
        if self.channel.destroyed:
            return None
        reply = await self._traced(
            UNADVERTISE_ENDPOINT,
            self.cluster.send_unregister(self.channel, self.service_name),
        )
        self.state = RegistrationState.UNREGISTERED
        return reply

    async def destroy(self) -> None:
        self.destroyed = True
        self._clear_timer()
        await self._cancel_register_task()
        if not self.channel.destroyed:
            await self.channel.close()
        self.state = RegistrationState.UNREGISTERED

    async def _reregister(self) -> None:
        self.state = RegistrationState.REREGISTERING
        try:
            await self._send_register()
        except REGISTRATION_ERRORS as err:
            logger.error(
                "Failed to register to hyperbahn for remote {}: {}",
                self.service_name,
                err,
            )
        self.state = RegistrationState.REGISTERED
        self._arm_timer()

    async def _cancel_register_task(self) -> None:
        task, self._register_task = self._register_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _send_register(self) -> AdvertisementResponse:
        reply = await self._traced(
            ADVERTISE_ENDPOINT,
            self.cluster.send_register(self.channel, self.service_name),
        )
        self.registration_count += 1
        return reply

    async def _traced(
        self, endpoint: str, call: Awaitable[AdvertisementResponse]
    ) -> AdvertisementResponse:
        if not self.trace:
            return await call
        started = time.time()
        try:
            reply = await call
        except REGISTRATION_ERRORS as err:
            await self._report_span(endpoint, started, err)
            raise
        await self._report_span(endpoint, started)
        return reply

    async def _report_span(
        self, endpoint: str, started: float, error: BaseException | None = None
    ) -> None:
        span: JsonBody = {
            "traceId": str(ulid.new()),
            "name": endpoint,
            "serviceName": HYPERBAHN_SERVICE,
            "callerName": self.service_name,
            "host": self.host_port,
            "startTime": int(started * 1000),
            "duration": int((time.time() - started) * 1000),
            "error": None if error is None else repr(error),
        }
        try:
            await self.cluster.report_span(self.channel, span)
        except REGISTRATION_ERRORS as err:
            logger.warning(
                "Failed to report {} span for remote {}: {}",
                endpoint,
                self.service_name,
                err,
            )

    def _arm_timer(self) -> None:
        if (
            self.destroyed
            or self.withdrawn
            or self.channel.destroyed
            or self.register_every_interval <= 0
        ):
            return
        self._clear_timer()
        loop = asyncio.get_running_loop()
        self.register_timer = loop.call_later(
            self.register_every_interval / 1000.0, self.do_register
        )

    def _clear_timer(self) -> None:
        if self.register_timer is not None:
            self.register_timer.cancel()
            self.register_timer = None

    async def _echo(self, call: CallRequest) -> bytes:
        return call.body
