"""Tests for the baton-chain CommandSerializer and the exclusive lock"""

import asyncio
import time

import pytest
from loguru import logger

from cd48.device.serializer import CommandSerializer, exclusive_lock
from cd48.util import shutdown_client_log, start_client_log
from cd48.util.defaults import TEST_LOGLEVEL


class TestCommandSerializer:
    @pytest.fixture(autouse=True, scope="class")
    def client_log(self):
        start_client_log(log_level=TEST_LOGLEVEL, log_to_stdout=True, log_to_file=True)
        yield
        shutdown_client_log()

    @pytest.fixture(autouse=True)
    def log(self, request):
        logger.warning("STARTED Test '{}'".format(request.node.originalname))

        def fin():
            logger.warning("COMPLETED Test '{}' \n".format(request.node.originalname))

        request.addfinalizer(fin)

    @pytest.mark.asyncio
    async def test_rate_limit_spacing(self):
        """Concurrent turns start at least rate_limit apart"""
        serializer = CommandSerializer(rate_limit=0.1)
        starts = []

        async def command():
            async with serializer.turn():
                starts.append(time.monotonic())
                await asyncio.sleep(0.01)

        t0 = time.monotonic()
        await asyncio.gather(*(command() for _ in range(4)))
        elapsed = time.monotonic() - t0

        assert len(starts) == 4
        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(gap >= 0.1 - 1e-3 for gap in gaps), gaps
        assert elapsed >= 3 * 0.1 - 1e-3

    @pytest.mark.asyncio
    async def test_first_turn_not_delayed(self):
        serializer = CommandSerializer(rate_limit=0.5)
        t0 = time.monotonic()
        async with serializer.turn():
            pass
        assert time.monotonic() - t0 < 0.1
        assert serializer.last_command_time is not None

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        serializer = CommandSerializer()
        order = []

        async def command(i):
            async with serializer.turn():
                await asyncio.sleep(0.005)
                order.append(i)

        tasks = [asyncio.create_task(command(i)) for i in range(6)]
        await asyncio.gather(*tasks)
        assert order == list(range(6))

    @pytest.mark.asyncio
    async def test_mutual_exclusion(self):
        serializer = CommandSerializer()
        holders = 0
        max_holders = 0

        async def command():
            nonlocal holders, max_holders
            async with serializer.turn():
                holders += 1
                max_holders = max(max_holders, holders)
                await asyncio.sleep(0.002)
                holders -= 1

        await asyncio.gather(*(command() for _ in range(10)))
        assert max_holders == 1
        assert serializer.pending == 0

    @pytest.mark.asyncio
    async def test_release_on_error(self):
        serializer = CommandSerializer()

        with pytest.raises(RuntimeError):
            async with serializer.turn():
                raise RuntimeError("boom")

        # next turn must not wedge
        async with asyncio.timeout(1.0):
            async with serializer.turn():
                pass
        assert serializer.pending == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_keeps_exclusion(self):
        """A waiter cancelled in the queue does not let the next one in early"""
        serializer = CommandSerializer()
        release_first = asyncio.Event()
        events = []

        async def first():
            async with serializer.turn():
                events.append("first in")
                await release_first.wait()
                events.append("first out")

        async def waiter(name):
            async with serializer.turn():
                events.append(f"{name} in")

        t1 = asyncio.create_task(first())
        await asyncio.sleep(0)
        t2 = asyncio.create_task(waiter("second"))
        t3 = asyncio.create_task(waiter("third"))
        await asyncio.sleep(0.01)
        assert serializer.pending == 3

        t2.cancel()
        await asyncio.sleep(0.01)
        assert "third in" not in events

        release_first.set()
        await asyncio.gather(t1, t3)
        with pytest.raises(asyncio.CancelledError):
            await t2
        assert events == ["first in", "first out", "third in"]
        assert serializer.pending == 0

    @pytest.mark.asyncio
    async def test_pending_count(self):
        serializer = CommandSerializer()
        gate = asyncio.Event()

        async def holder():
            async with serializer.turn():
                await gate.wait()

        tasks = [asyncio.create_task(holder()) for _ in range(3)]
        await asyncio.sleep(0.01)
        assert serializer.pending == 3
        gate.set()
        await asyncio.gather(*tasks)
        assert serializer.pending == 0


class TestExclusiveLock:
    @pytest.mark.asyncio
    async def test_same_name_same_lock(self):
        assert exclusive_lock("a") is exclusive_lock("a")
        assert exclusive_lock("a") is not exclusive_lock("b")

    def test_requires_running_loop(self):
        with pytest.raises(RuntimeError):
            exclusive_lock("cd48-serial")
