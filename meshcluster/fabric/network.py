"""
In-process address space for loopback channels.

Every channel binds a ``host:port`` here; dialing an address that has no
listener fails with ``ConnectionRefusedError`` (``errno.ECONNREFUSED``), the
same way a refused TCP connect does.
"""

from __future__ import annotations

import errno
import itertools
from typing import TYPE_CHECKING

from loguru import logger

from meshcluster.datastructures.type_aliases import HostAddress, HostPort, PortNumber

if TYPE_CHECKING:
    from .channel import Channel


def split_host_port(host_port: HostPort) -> tuple[HostAddress, PortNumber]:
    host, _, port = host_port.rpartition(":")
    if not host:
        raise ValueError(f"invalid host:port {host_port!r}")
    return host, int(port)


class LoopbackNetwork:
    """Registry of listening channels keyed by ``host:port``."""

    def __init__(self, *, base_port: PortNumber = 40000) -> None:
        self._listeners: dict[HostPort, Channel] = {}
        self._ports = itertools.count(base_port)

    def bind(self, channel: Channel, host: HostAddress, port: PortNumber) -> HostPort:
        """Bind ``channel`` to ``host:port``; port 0 picks an ephemeral port."""
        if port == 0:
            host_port = f"{host}:{next(self._ports)}"
            while host_port in self._listeners:
                host_port = f"{host}:{next(self._ports)}"
        else:
            host_port = f"{host}:{port}"
            if host_port in self._listeners:
                raise OSError(
                    errno.EADDRINUSE, f"listen EADDRINUSE {host_port}"
                )
        self._listeners[host_port] = channel
        logger.debug("Bound loopback listener {}", host_port)
        return host_port

    def unbind(self, host_port: HostPort) -> None:
        self._listeners.pop(host_port, None)

    def resolve(self, host_port: HostPort) -> Channel:
        channel = self._listeners.get(host_port)
        if channel is None or channel.destroyed:
            raise ConnectionRefusedError(
                errno.ECONNREFUSED, f"connect ECONNREFUSED {host_port}"
            )
        return channel

    def is_listening(self, host_port: HostPort) -> bool:
        channel = self._listeners.get(host_port)
        return channel is not None and not channel.destroyed

    def listeners(self) -> list[HostPort]:
        return sorted(self._listeners)
