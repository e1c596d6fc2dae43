"""
Gossip membership for loopback relays.

Each relay owns one ``MembershipClient``. The client's view of the cluster
is the server set of its ``HashRing``; every change to that set recomputes
the ring checksum and fires ``ring.checksum_computed``.

Bootstrapping joins every seed in the bootstrap host list (the same list
object the cluster keeps growing) and merges the member lists exchanged on
join. Afterwards a gossip timer pings one random known host per interval and
merges the reply, so late joiners propagate to everyone.
"""

from __future__ import annotations

import asyncio
import contextlib
import random

from loguru import logger

from meshcluster.core.model import MembershipDigest, MembershipError, MeshError
from meshcluster.datastructures.type_aliases import DurationSeconds, HostPort, JsonBody

from .channel import CallRequest, Channel, JsonCaller
from .ring import HashRing

MEMBERSHIP_SERVICE = "ringpop"
JOIN_ENDPOINT = "/protocol/join"
PING_ENDPOINT = "/protocol/ping"


class MembershipClient:
    """Membership view of one relay, kept in sync by join and ping gossip."""

    def __init__(
        self,
        channel: Channel,
        caller: JsonCaller,
        *,
        gossip_interval: DurationSeconds = 0.05,
        call_timeout: DurationSeconds = 1.0,
        replica_points: int = 100,
        rng: random.Random | None = None,
    ) -> None:
        if channel.host_port is None:
            raise RuntimeError("membership requires a listening channel")
        self.channel = channel
        self.caller = caller
        self.gossip_interval = gossip_interval
        self.call_timeout = call_timeout
        self.ring = HashRing(replica_points)
        self.bootstrap_hosts: list[HostPort] = []
        self.ready = False
        self.destroyed = False
        self._rng = rng or random.Random()
        self._gossip_timer: asyncio.TimerHandle | None = None
        self._gossip_task: asyncio.Task[None] | None = None

        self.ring.add_server(self.host_port)
        caller.register(channel, MEMBERSHIP_SERVICE, JOIN_ENDPOINT, self._handle_digest)
        caller.register(channel, MEMBERSHIP_SERVICE, PING_ENDPOINT, self._handle_digest)

    @property
    def host_port(self) -> HostPort:
        assert self.channel.host_port is not None
        return self.channel.host_port

    def hosts(self) -> list[HostPort]:
        return list(self.ring.servers)

    def lookup(self, key: str) -> HostPort | None:
        return self.ring.lookup(key)

    async def bootstrap(self, bootstrap_hosts: list[HostPort]) -> None:
        """Join the seeds in ``bootstrap_hosts`` and start gossiping.

        ``bootstrap_hosts`` is kept by reference. Joining fails only when
        there are other seeds and none of them answered.
        """
        self.bootstrap_hosts = bootstrap_hosts
        seeds = [host for host in bootstrap_hosts if host != self.host_port]
        if seeds:
            results = await asyncio.gather(
                *(self._exchange(seed, JOIN_ENDPOINT) for seed in seeds),
                return_exceptions=True,
            )
            failures = [result for result in results if isinstance(result, BaseException)]
            for failure in failures:
                if not isinstance(failure, Exception):
                    raise failure
            if len(failures) == len(seeds):
                raise MembershipError(
                    f"{self.host_port} could not join any of {len(seeds)} seeds"
                ) from failures[0]
            for seed, result in zip(seeds, results):
                if isinstance(result, BaseException):
                    logger.debug(
                        "[{}] Join to seed {} failed: {}", self.host_port, seed, result
                    )

        self.ready = True
        logger.debug(
            "[{}] Membership bootstrapped with {} hosts",
            self.host_port,
            self.ring.get_server_count(),
        )
        self._schedule_gossip()

    async def destroy(self) -> None:
        self.destroyed = True
        if self._gossip_timer is not None:
            self._gossip_timer.cancel()
            self._gossip_timer = None
        task, self._gossip_task = self._gossip_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def merge(self, hosts: list[HostPort]) -> bool:
        new_hosts = [host for host in dict.fromkeys(hosts) if not self.ring.has_server(host)]
        if not new_hosts:
            return False
        logger.debug("[{}] Learned members {}", self.host_port, new_hosts)
        return self.ring.add_remove_servers(added=new_hosts)

    def digest(self) -> MembershipDigest:
        return MembershipDigest(source=self.host_port, members=self.hosts())

    async def _exchange(self, target: HostPort, endpoint: str) -> None:
        reply = await self.caller.send(
            self.channel,
            target,
            MEMBERSHIP_SERVICE,
            endpoint,
            self.digest().model_dump(),
            timeout=self.call_timeout,
            retry_limit=0,
        )
        digest = MembershipDigest.model_validate(reply)
        self.merge([digest.source, *digest.members])

    async def _handle_digest(self, body: JsonBody, call: CallRequest) -> JsonBody:
        digest = MembershipDigest.model_validate(body)
        self.merge([digest.source, *digest.members])
        return self.digest().model_dump()

    def _schedule_gossip(self) -> None:
        if self.destroyed:
            return
        loop = asyncio.get_running_loop()
        self._gossip_timer = loop.call_later(self.gossip_interval, self._on_gossip_timer)

    def _on_gossip_timer(self) -> None:
        self._gossip_timer = None
        if self.destroyed:
            return
        self._gossip_task = asyncio.create_task(self._gossip_round())

    async def _gossip_round(self) -> None:
        try:
            candidates = sorted(
                {*self.ring.servers, *self.bootstrap_hosts} - {self.host_port}
            )
            if candidates:
                target = self._rng.choice(candidates)
                await self._exchange(target, PING_ENDPOINT)
        except (MeshError, ConnectionError) as err:
            logger.debug("[{}] Gossip ping failed: {}", self.host_port, err)
        finally:
            self._gossip_task = None
            self._schedule_gossip()
