"""
Event emitters with scoped subscription handles.

Every listener registration returns a ``Subscription``. A subscription is a
context manager, so a group of them can be held in a ``contextlib.ExitStack``
and released together when a wait resolves or is cancelled:

    with contextlib.ExitStack() as stack:
        stack.enter_context(channel.connection_event.subscribe(on_conn))
        await future

Releasing is idempotent; the listener is removed exactly once.
"""

from __future__ import annotations

from collections.abc import Callable
from types import TracebackType
from typing import Any

from loguru import logger

type Listener = Callable[..., Any]


class Subscription:
    """Handle for one listener registered on one ``Event``."""

    __slots__ = ("_event", "_listener", "active")

    def __init__(self, event: Event, listener: Listener) -> None:
        self._event = event
        self._listener = listener
        self.active = True

    def release(self) -> None:
        if not self.active:
            return
        self.active = False
        self._event.remove_listener(self._listener)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


class Event:
    """A synchronous multi-listener event."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Subscription:
        """Register a listener and return its release handle."""
        self._listeners.append(listener)
        return Subscription(self, listener)

    on = subscribe

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def emit(self, *args: Any) -> None:
        """Call every listener with ``args``.

        Listeners added or removed during emission take effect on the next
        emission. A failing listener is logged and does not stop delivery.
        """
        for listener in tuple(self._listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Error in listener for {} event", self.name)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def __repr__(self) -> str:
        return f"Event({self.name!r}, listeners={len(self._listeners)})"
