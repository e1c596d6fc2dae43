"""Tests for counted ready signals and join_all."""

import asyncio

import pytest

from meshcluster.core.ready_signal import CountedReadySignal, join_all


class TestCountedReadySignal:
    """Counted rendezvous semantics."""

    def test_zero_count_fires_immediately(self):
        signal = CountedReadySignal(0)
        seen = []
        signal.on_ready(seen.append)

        assert signal.fired
        assert seen == [None]

    def test_fires_exactly_once_after_count_signals(self):
        signal = CountedReadySignal(3)
        seen = []
        signal(seen.append)

        signal.signal()
        signal.signal()
        assert seen == []
        assert signal.remaining == 1

        signal.signal()
        signal.signal()
        assert seen == [None]
        assert signal.remaining == 0

    def test_signal_accepts_and_ignores_arguments(self):
        signal = CountedReadySignal(1)
        signal.signal("127.0.0.1:40000")
        assert signal.fired

    def test_fail_wins_over_later_signals(self):
        signal = CountedReadySignal(2)
        seen = []
        signal.on_ready(seen.append)
        error = RuntimeError("remote failed")

        signal.fail(error)
        signal.signal()
        signal.signal()

        assert seen == [error]

    @pytest.mark.asyncio
    async def test_wait_returns_when_fired(self):
        signal = CountedReadySignal(2)
        waiter = asyncio.create_task(signal.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        signal.signal()
        signal.signal()
        await asyncio.wait_for(waiter, timeout=1.0)

    @pytest.mark.asyncio
    async def test_wait_raises_failure(self):
        signal = CountedReadySignal(1)
        signal.fail(ValueError("nope"))

        with pytest.raises(ValueError, match="nope"):
            await signal.wait()


class TestJoinAll:
    """Concurrent fan-in over coroutines."""

    @pytest.mark.asyncio
    async def test_results_keep_submission_order(self):
        async def delayed(value, delay):
            await asyncio.sleep(delay)
            return value

        results = await join_all(
            [delayed("a", 0.03), delayed("b", 0.0), delayed("c", 0.01)]
        )

        assert results == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        assert await join_all([]) == []

    @pytest.mark.asyncio
    async def test_failure_does_not_cancel_siblings(self):
        finished = []

        async def fails():
            raise ConnectionRefusedError("connect ECONNREFUSED")

        async def slow(name):
            await asyncio.sleep(0.02)
            finished.append(name)
            return name

        with pytest.raises(ConnectionRefusedError):
            await join_all([slow("first"), fails(), slow("last")])

        assert sorted(finished) == ["first", "last"]

    @pytest.mark.asyncio
    async def test_first_failure_in_submission_order_is_raised(self):
        async def fail_with(error, delay):
            await asyncio.sleep(delay)
            raise error

        with pytest.raises(KeyError):
            await join_all(
                [fail_with(KeyError("first"), 0.02), fail_with(ValueError("second"), 0)]
            )
