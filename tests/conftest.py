"""Pytest configuration and fixtures for meshcluster testing.

Clusters are created through ``cluster_factory`` so every cluster a test
builds is closed afterwards, even when bootstrap fails half way. Closing is
best-effort and never raises, so teardown cannot mask the test's own error.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from loguru import logger

from meshcluster.core.config import ClusterSettings
from meshcluster.fabric.channel import Channel
from meshcluster.fabric.network import LoopbackNetwork
from meshcluster.harness.cluster import ClusterOrchestrator

# Fast gossip keeps convergence waits short
TEST_GOSSIP_INTERVAL = 0.01


class AsyncTestContext:
    """Context manager for async test operations with automatic cleanup."""

    def __init__(self) -> None:
        self.clusters: list[ClusterOrchestrator] = []
        self.channels: list[Channel] = []
        self.tasks: list[asyncio.Task[Any]] = []

    async def __aenter__(self) -> "AsyncTestContext":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Ensure all resources are cleaned up properly."""
        for task in self.tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        for channel in self.channels:
            try:
                await channel.close()
            except Exception as e:
                logger.warning(f"Error closing channel: {e}")

        for cluster in self.clusters:
            await cluster.close()

        self.clusters.clear()
        self.channels.clear()
        self.tasks.clear()


@pytest_asyncio.fixture
async def test_context() -> AsyncGenerator[AsyncTestContext, None]:
    """Provides a clean async test context with automatic resource cleanup."""
    async with AsyncTestContext() as ctx:
        yield ctx


@pytest.fixture
def network() -> LoopbackNetwork:
    return LoopbackNetwork()


@pytest_asyncio.fixture
async def cluster_factory(
    test_context: AsyncTestContext,
) -> AsyncGenerator[Callable[..., ClusterOrchestrator], None]:
    """Builds unbootstrapped clusters that are closed after the test.

    Example Usage:
        async def test_something(cluster_factory):
            cluster = cluster_factory(size=3, no_steve=True)
            await cluster.bootstrap()
            assert cluster.is_ringpop_converged()
    """

    def make(
        *,
        network: LoopbackNetwork | None = None,
        node_factory: Any = None,
        **overrides: Any,
    ) -> ClusterOrchestrator:
        overrides.setdefault("gossip_interval", TEST_GOSSIP_INTERVAL)
        cluster = ClusterOrchestrator(
            ClusterSettings(**overrides), network=network, node_factory=node_factory
        )
        test_context.clusters.append(cluster)
        return cluster

    yield make


@pytest_asyncio.fixture
async def small_cluster(
    cluster_factory: Callable[..., ClusterOrchestrator],
) -> AsyncGenerator[ClusterOrchestrator, None]:
    """A bootstrapped 2-relay cluster with the default bob/steve remotes."""
    cluster = cluster_factory(size=2)
    await cluster.bootstrap()
    yield cluster
