"""
Membership convergence detection.

Convergence is a level: every node's ring host set equals the canonical
host list. It is re-evaluated on the edge of every ``checksum_computed``
event from any node, so it does not matter which event happens to be the
last one before convergence.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Collection, Iterable, Sequence
from typing import Protocol

from loguru import logger

from meshcluster.core.events import Event
from meshcluster.datastructures.type_aliases import HostPort


class ObservedRing(Protocol):
    servers: dict[HostPort, int]
    checksum_computed: Event


class MembershipView(Protocol):
    ring: ObservedRing

    def hosts(self) -> list[HostPort]: ...


def is_converged(
    views: Iterable[Collection[HostPort]], canonical: Sequence[HostPort]
) -> bool:
    """True when every view holds exactly the canonical hosts.

    Both sides are sorted into fresh lists; ``canonical`` is not modified.
    """
    expected = sorted(canonical)
    for view in views:
        if len(view) != len(expected):
            return False
        if sorted(view) != expected:
            return False
    return True


class ConvergenceDetector:
    """Waits for a set of membership views to agree with a host list."""

    def __init__(
        self, views: Sequence[MembershipView], canonical: Sequence[HostPort]
    ) -> None:
        self.views = list(views)
        self.canonical = canonical
        self.checks = 0

    def is_converged(self) -> bool:
        self.checks += 1
        return is_converged((view.hosts() for view in self.views), self.canonical)

    async def wait(self) -> None:
        """Return once converged; subscribes to nothing if already converged."""
        if self.is_converged():
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        with contextlib.ExitStack() as subscriptions:

            def check_again(*_: object) -> None:
                if future.done() or not self.is_converged():
                    return
                subscriptions.close()
                future.set_result(None)

            for view in self.views:
                subscriptions.enter_context(
                    view.ring.checksum_computed.subscribe(check_again)
                )
            logger.debug(
                "Waiting for {} membership views to converge on {} hosts",
                len(self.views),
                len(self.canonical),
            )
            await future
