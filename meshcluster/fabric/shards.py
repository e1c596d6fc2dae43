"""
Exit shard resolution.

For a service name and a replication factor K the shard keys are
``"<service>~0"`` .. ``"<service>~K-1"``. Each key is looked up on a node's
membership ring; the result groups keys by the relay that owns them:

    {"127.0.0.1:40001": ["bob~0"], "127.0.0.1:40003": ["bob~1"]}

Values keep ring lookup order. Two nodes with the same membership view
produce the same mapping; comparisons across nodes go through
``normalize_exit_shard`` so value order never matters.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from meshcluster.datastructures.type_aliases import HostPort, ServiceName, ShardKey

type ExitShard = dict[HostPort, list[ShardKey]]


class RingLookup(Protocol):
    def lookup(self, key: str) -> HostPort | None: ...


def shard_keys(service_name: ServiceName, k_value: int) -> list[ShardKey]:
    return [f"{service_name}~{i}" for i in range(k_value)]


def normalize_exit_shard(shard: Mapping[HostPort, list[ShardKey]]) -> ExitShard:
    return {host: sorted(keys) for host, keys in sorted(shard.items())}


def diff_exit_shards(
    expected: Mapping[HostPort, list[ShardKey]],
    actual: Mapping[HostPort, list[ShardKey]],
) -> list[str]:
    """Describe every key-level and value-level difference between two shards."""
    expected_n = normalize_exit_shard(expected)
    actual_n = normalize_exit_shard(actual)
    problems: list[str] = []
    for host in sorted(expected_n.keys() - actual_n.keys()):
        problems.append(f"missing exit {host} (keys {expected_n[host]})")
    for host in sorted(actual_n.keys() - expected_n.keys()):
        problems.append(f"unexpected exit {host} (keys {actual_n[host]})")
    for host in sorted(expected_n.keys() & actual_n.keys()):
        if expected_n[host] != actual_n[host]:
            problems.append(
                f"exit {host} owns {actual_n[host]}, expected {expected_n[host]}"
            )
    return problems


class ShardResolver:
    """Pure query layer over one node's membership ring."""

    def __init__(self, ring: RingLookup, k_value: int) -> None:
        if k_value < 1:
            raise ValueError("k_value must be at least 1")
        self.ring = ring
        self.k_value = k_value

    def exits_for(self, service_name: ServiceName) -> ExitShard:
        shard: ExitShard = {}
        for key in shard_keys(service_name, self.k_value):
            host = self.ring.lookup(key)
            if host is None:
                continue
            shard.setdefault(host, []).append(key)
        return shard

    def exit_hosts(self, service_name: ServiceName) -> list[HostPort]:
        """Distinct exit relays in shard-key order."""
        return list(self.exits_for(service_name))
