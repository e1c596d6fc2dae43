"""
Fan-in primitives for staged asynchronous startup.

``CountedReadySignal`` collects N independent completions into one
continuation that fires exactly once. ``join_all`` runs a batch of
coroutines concurrently, waits for every one of them and then raises the
first failure in submission order. Siblings of a failed unit are never
cancelled.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

type ReadyCallback = Callable[[BaseException | None], Any]


class CountedReadySignal:
    """Counted rendezvous: fires once after ``count`` calls to ``signal``.

    A count of zero (or less) fires at construction time. ``fail`` fires the
    signal early with an error; whichever happens first wins and later
    signals are ignored.
    """

    def __init__(self, count: int) -> None:
        self._remaining = count
        self._callbacks: list[ReadyCallback] = []
        self._error: BaseException | None = None
        self._fired = False
        self._event = asyncio.Event()
        if count <= 0:
            self._fire()

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def remaining(self) -> int:
        return max(self._remaining, 0)

    def signal(self, *_: Any) -> None:
        if self._fired:
            return
        self._remaining -= 1
        if self._remaining <= 0:
            self._fire()

    def fail(self, error: BaseException) -> None:
        if self._fired:
            return
        self._error = error
        self._fire()

    def on_ready(self, callback: ReadyCallback) -> None:
        """Run ``callback(error)`` once the signal fires (now if it already has)."""
        if self._fired:
            callback(self._error)
            return
        self._callbacks.append(callback)

    __call__ = on_ready

    async def wait(self) -> None:
        await self._event.wait()
        if self._error is not None:
            raise self._error

    def _fire(self) -> None:
        self._fired = True
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self._error)


async def join_all[T](aws: Iterable[Awaitable[T]]) -> list[T]:
    """Await every awaitable concurrently; raise the first failure, if any."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)
