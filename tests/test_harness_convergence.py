"""Tests for membership convergence detection."""

import asyncio

import pytest
from hypothesis import given
from hypothesis import strategies as st

from meshcluster.fabric.ring import HashRing
from meshcluster.harness.convergence import ConvergenceDetector, is_converged


class RingView:
    """Membership view double backed by a real hash ring."""

    def __init__(self, *hosts):
        self.ring = HashRing(replica_points=5)
        self.ring.add_remove_servers(added=hosts)

    def hosts(self):
        return list(self.ring.servers)


class TestIsConverged:
    """The pure convergence predicate."""

    def test_matching_views(self):
        assert is_converged([["b", "a"], ["a", "b"]], ["a", "b"])

    def test_missing_member(self):
        assert not is_converged([["a", "b"], ["a"]], ["a", "b"])

    def test_extra_member(self):
        assert not is_converged([["a", "b", "c"]], ["a", "b"])

    def test_no_views(self):
        assert is_converged([], ["a"])

    @given(st.lists(st.text(min_size=1, max_size=5), max_size=8), st.randoms())
    def test_canonical_is_never_mutated(self, hosts, rng):
        canonical = list(hosts)
        snapshot = list(canonical)
        view = list(hosts)
        rng.shuffle(view)

        assert is_converged([view], canonical)
        assert canonical == snapshot


class TestConvergenceDetector:
    """Edge-triggered waits over ring checksum events."""

    @pytest.mark.asyncio
    async def test_converged_wait_subscribes_nothing(self):
        views = [RingView("a", "b"), RingView("b", "a")]
        detector = ConvergenceDetector(views, ["a", "b"])

        await detector.wait()
        await detector.wait()

        assert detector.checks == 2
        assert all(view.ring.checksum_computed.listener_count == 0 for view in views)

    @pytest.mark.asyncio
    async def test_wait_resolves_on_the_converging_event(self):
        lagging = RingView("a")
        views = [RingView("a", "b"), lagging]
        canonical = ["a", "b"]
        detector = ConvergenceDetector(views, canonical)

        waiter = asyncio.create_task(detector.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        assert lagging.ring.checksum_computed.listener_count == 1

        # an unrelated event on the converged ring re-checks but does not finish
        views[0].ring.compute_checksum()
        await asyncio.sleep(0)
        assert not waiter.done()

        lagging.ring.add_server("b")
        await asyncio.wait_for(waiter, timeout=1.0)

        assert all(view.ring.checksum_computed.listener_count == 0 for view in views)
        assert canonical == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cancelled_wait_releases_subscriptions(self):
        views = [RingView("a"), RingView("b")]
        detector = ConvergenceDetector(views, ["a", "b"])

        waiter = asyncio.create_task(detector.wait())
        await asyncio.sleep(0)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert all(view.ring.checksum_computed.listener_count == 0 for view in views)

    def test_is_converged_counts_checks(self):
        detector = ConvergenceDetector([RingView("a")], ["a"])
        assert detector.is_converged()
        assert detector.checks == 1
