"""Integration tests for periodic remote registration."""

import asyncio

import pytest

pytestmark = pytest.mark.integration


def advertise_total(cluster):
    return sum(app.advertise_count for app in cluster.apps)


async def wait_for_advertisements(cluster, count, timeout=2.0):
    """Wait until the relays together have seen ``count`` advertisements."""
    done = asyncio.Event()

    def check(*_):
        if advertise_total(cluster) >= count:
            done.set()

    subscriptions = [app.advertise_event.subscribe(check) for app in cluster.apps]
    try:
        check()
        await asyncio.wait_for(done.wait(), timeout=timeout)
    finally:
        for subscription in subscriptions:
            subscription.release()


class TestRegisterEvery:
    """Remotes configured to re-register on an interval."""

    @pytest.mark.asyncio
    async def test_steve_stops_advertising_after_destroy(self, cluster_factory):
        cluster = cluster_factory(
            size=2,
            no_bob=True,
            no_tcollector=True,
            remotes_config={"steve": {"register_every": 100}},
        )
        await cluster.bootstrap()
        steve = cluster.remotes["steve"]
        assert steve.register_every_interval == 100
        assert steve.registration_pending

        await wait_for_advertisements(cluster, 2)

        await steve.destroy()
        settled = advertise_total(cluster)
        await asyncio.sleep(0.5)

        assert advertise_total(cluster) == settled
        assert not steve.registration_pending

    @pytest.mark.asyncio
    async def test_one_shot_remotes_advertise_once(self, cluster_factory):
        cluster = cluster_factory(size=2, no_steve=True, no_tcollector=True)
        await cluster.bootstrap()
        bob = cluster.remotes["bob"]

        await asyncio.sleep(0.2)

        assert advertise_total(cluster) == 1
        assert bob.registration_count == 1
        assert not bob.registration_pending

    @pytest.mark.asyncio
    async def test_unregister_stops_reregistration(self, cluster_factory):
        cluster = cluster_factory(
            size=2,
            no_bob=True,
            no_tcollector=True,
            remotes_config={"steve": {"register_every": 20}},
        )
        await cluster.bootstrap()
        steve = cluster.remotes["steve"]
        await wait_for_advertisements(cluster, 3)

        await steve.do_unregister()
        settled = advertise_total(cluster)
        await asyncio.sleep(0.2)

        assert advertise_total(cluster) == settled
        assert not steve.registration_pending
