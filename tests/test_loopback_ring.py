"""Property-based tests for the consistent hash ring."""

from hypothesis import given, settings
from hypothesis import strategies as st

from meshcluster.fabric.ring import HashRing, hash32

host_ports = st.builds(
    lambda port: f"127.0.0.1:{port}", st.integers(min_value=1024, max_value=65535)
)
host_sets = st.lists(host_ports, min_size=1, max_size=8, unique=True)
keys = st.text(min_size=1, max_size=20)


class TestHashRing:
    """Lookup and checksum behavior."""

    def test_empty_ring_lookup(self):
        assert HashRing().lookup("bob~0") is None

    def test_hash32_is_unsigned_32_bit(self):
        value = hash32("bob~0")
        assert 0 <= value < 2**32
        assert hash32("bob~0") == value

    @given(host_sets, st.lists(keys, min_size=1, max_size=10), st.randoms())
    @settings(max_examples=50)
    def test_insertion_order_never_changes_lookups(self, hosts, lookup_keys, rng):
        shuffled = list(hosts)
        rng.shuffle(shuffled)

        first = HashRing(replica_points=20)
        second = HashRing(replica_points=20)
        first.add_remove_servers(added=hosts)
        for host in shuffled:
            second.add_server(host)

        for key in lookup_keys:
            assert first.lookup(key) == second.lookup(key)
        assert first.checksum == second.checksum

    @given(host_sets, keys)
    @settings(max_examples=50)
    def test_lookup_returns_a_member(self, hosts, key):
        ring = HashRing(replica_points=10)
        ring.add_remove_servers(added=hosts)
        assert ring.lookup(key) in hosts

    @given(host_sets)
    @settings(max_examples=30)
    def test_removing_a_server_forgets_it(self, hosts):
        ring = HashRing(replica_points=10)
        ring.add_remove_servers(added=hosts)
        removed = hosts[0]
        ring.remove_server(removed)

        assert not ring.has_server(removed)
        assert ring.get_server_count() == len(hosts) - 1
        for i in range(20):
            assert ring.lookup(f"svc~{i}") != removed

    def test_checksum_event_fires_once_per_batch(self):
        ring = HashRing(replica_points=5)
        checksums = []
        ring.checksum_computed.subscribe(checksums.append)

        assert ring.add_remove_servers(added=["127.0.0.1:1", "127.0.0.1:2"])
        assert len(checksums) == 1
        assert checksums[0] == ring.checksum

        assert not ring.add_remove_servers(added=["127.0.0.1:1"])
        assert len(checksums) == 1

        ring.remove_server("127.0.0.1:2")
        assert len(checksums) == 2
