"""Consistent hash ring for relay membership.

Each server contributes ``replica_points`` positions to a 32-bit ring.
``lookup`` walks clockwise from a key's hash to the first position, so every
ring holding the same server set answers the same way regardless of the
order servers were added in.

The ring checksum is a hash of the sorted server list. It is recomputed on
every membership change and announced on ``checksum_computed``; callers use
it to notice that a node's view has moved.
"""

from __future__ import annotations

import bisect
import hashlib
from collections.abc import Iterable

from meshcluster.core.events import Event
from meshcluster.datastructures.type_aliases import HostPort, RingChecksum


def hash32(key: str) -> int:
    """First 4 bytes of MD5 as an unsigned 32-bit integer."""
    digest = hashlib.md5(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


class HashRing:
    """Consistent hash ring keyed by ``host:port``."""

    def __init__(self, replica_points: int = 100) -> None:
        self.replica_points = replica_points
        self.servers: dict[HostPort, int] = {}
        self.checksum: RingChecksum | None = None
        self.checksum_computed = Event("checksum_computed")
        self._positions: list[int] = []
        self._owners: list[HostPort] = []

    def add_server(self, server: HostPort) -> bool:
        return self.add_remove_servers(added=[server])

    def remove_server(self, server: HostPort) -> bool:
        return self.add_remove_servers(removed=[server])

    def add_remove_servers(
        self,
        added: Iterable[HostPort] = (),
        removed: Iterable[HostPort] = (),
    ) -> bool:
        """Apply a batch of changes; recompute the checksum once if any applied."""
        changed = False
        for server in added:
            if server in self.servers:
                continue
            self.servers[server] = self.replica_points
            for i in range(self.replica_points):
                self._insert(hash32(f"{server}{i}"), server)
            changed = True
        for server in removed:
            if server not in self.servers:
                continue
            del self.servers[server]
            kept = [
                (position, owner)
                for position, owner in zip(self._positions, self._owners)
                if owner != server
            ]
            self._positions = [position for position, _ in kept]
            self._owners = [owner for _, owner in kept]
            changed = True
        if changed:
            self.compute_checksum()
        return changed

    def has_server(self, server: HostPort) -> bool:
        return server in self.servers

    def get_server_count(self) -> int:
        return len(self.servers)

    def lookup(self, key: str) -> HostPort | None:
        if not self._positions:
            return None
        idx = bisect.bisect_right(self._positions, hash32(key))
        if idx == len(self._positions):
            idx = 0
        return self._owners[idx]

    def compute_checksum(self) -> RingChecksum:
        self.checksum = hash32(";".join(sorted(self.servers)))
        self.checksum_computed.emit(self.checksum)
        return self.checksum

    def _insert(self, position: int, owner: HostPort) -> None:
        # Ties on position are broken by owner name so insertion order never
        # changes lookup results.
        idx = bisect.bisect_left(self._positions, position)
        while idx < len(self._positions) and self._positions[idx] == position:
            if self._owners[idx] > owner:
                break
            idx += 1
        self._positions.insert(idx, position)
        self._owners.insert(idx, owner)
