"""Tests for command dispatch, retries and rate limiting over the mock host"""

import asyncio

import pytest
import pytest_asyncio
from conftest import fast_options
from loguru import logger

from cd48.device import CD48, exclusive_lock
from cd48.device.mock import MockSerialDevice, MockSerialHost
from cd48.types import (
    CommandTimeoutError,
    CommunicationError,
    InvalidResponseError,
    NotConnectedError,
)
from cd48.util import shutdown_client_log, start_client_log
from cd48.util.defaults import TEST_LOGLEVEL


class TestDispatcher:
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

    @pytest_asyncio.fixture
    async def cd48(self, mock_host):
        cd48 = CD48(fast_options(command_retries=3), host=mock_host)
        await cd48.connect()
        yield cd48
        await cd48.close()

    @pytest.mark.asyncio
    async def test_send_command(self, cd48: CD48, mock_device: MockSerialDevice):
        assert await cd48.send_command("v") == "CD48 v1.0.0"
        assert mock_device.written == ["v"]

    @pytest.mark.asyncio
    async def test_unknown_command_ok(self, cd48: CD48):
        assert await cd48.send_command("Q") == "OK"

    @pytest.mark.asyncio
    async def test_response_trimmed(self, cd48: CD48, mock_device: MockSerialDevice):
        mock_device.responses["x"] = "   padded  "
        assert await cd48.send_command("x") == "padded"

    @pytest.mark.asyncio
    async def test_retry_then_success(self, mock_host, mock_device):
        """Two silent attempts then an answer: one result, exactly three writes"""
        cd48 = CD48(fast_options(command_retries=2), host=mock_host)
        await cd48.connect()
        mock_device.go_silent(2)

        assert await cd48.get_version() == "CD48 v1.0.0"
        assert mock_device.count_writes("v") == 3
        await cd48.close()

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, mock_host, mock_device):
        cd48 = CD48(fast_options(command_retries=2), host=mock_host)
        await cd48.connect()
        mock_device.go_silent(10)

        with pytest.raises(CommandTimeoutError) as excinfo:
            await cd48.get_version()
        assert excinfo.value.command == "v"
        assert excinfo.value.timeout == 0.2
        assert mock_device.count_writes("v") == 3
        await cd48.close()

    @pytest.mark.asyncio
    async def test_no_retries(self, mock_host, mock_device):
        cd48 = CD48(fast_options(command_retries=0), host=mock_host)
        await cd48.connect()
        mock_device.go_silent(1)

        with pytest.raises(CommandTimeoutError):
            await cd48.get_version()
        assert mock_device.count_writes("v") == 1
        await cd48.close()

    @pytest.mark.asyncio
    async def test_invalid_response_not_retried(
        self, cd48: CD48, mock_device: MockSerialDevice
    ):
        mock_device.responses["c"] = "1 2 3 4 5 6 7"
        with pytest.raises(InvalidResponseError) as excinfo:
            await cd48.get_counts()
        assert excinfo.value.response == "1 2 3 4 5 6 7"
        assert mock_device.count_writes("c") == 1

    @pytest.mark.asyncio
    async def test_not_connected_not_retried(self, mock_host, mock_device):
        cd48 = CD48(fast_options(command_retries=3), host=mock_host)
        with pytest.raises(NotConnectedError) as excinfo:
            await cd48.get_version()
        assert excinfo.value.operation == "v"
        assert mock_device.writes == 0

    @pytest.mark.asyncio
    async def test_partial_line_at_deadline(
        self, cd48: CD48, mock_device: MockSerialDevice
    ):
        mock_device.responses["x"] = lambda command: None
        loop = asyncio.get_running_loop()

        async def feed_partial():
            await asyncio.sleep(0.02)
            mock_device.channel.feed("  partial")

        feeder = loop.create_task(feed_partial())
        assert await cd48.dispatcher.dispatch_once("x") == "partial"
        await feeder

    @pytest.mark.asyncio
    async def test_response_split_across_reads(
        self, cd48: CD48, mock_device: MockSerialDevice
    ):
        mock_device.responses["x"] = lambda command: None

        async def feed_in_pieces():
            await asyncio.sleep(0.01)
            mock_device.channel.feed("12 ")
            await asyncio.sleep(0.03)
            mock_device.channel.feed("34\r\n")

        feeder = asyncio.create_task(feed_in_pieces())
        assert await cd48.dispatcher.dispatch_once("x") == "12 34"
        await feeder

    @pytest.mark.asyncio
    async def test_split_terminator_not_taken_as_next_answer(
        self, cd48: CD48, mock_device: MockSerialDevice
    ):
        mock_device.responses["x"] = lambda command: None

        async def answer_in_two_reads():
            await asyncio.sleep(0.01)
            mock_device.channel.feed("abc\r")
            await asyncio.sleep(0.03)
            mock_device.channel.feed("\n")

        feeder = asyncio.create_task(answer_in_two_reads())
        assert await cd48.send_command("x") == "abc"
        await feeder

        # the stray LF is already buffered when the next command goes out
        mock_device.response_delay = 0.01
        assert await cd48.get_version() == "CD48 v1.0.0"
        assert await cd48.get_version() == "CD48 v1.0.0"

    @pytest.mark.asyncio
    async def test_leading_terminator_skipped(
        self, cd48: CD48, mock_device: MockSerialDevice
    ):
        mock_device.response_delay = 0.03
        loop = asyncio.get_running_loop()
        # stray LF arrives after the write, before the real answer
        loop.call_later(0.01, mock_device.channel.feed, "\n")
        assert await cd48.get_version() == "CD48 v1.0.0"
        assert await cd48.get_version() == "CD48 v1.0.0"

    @pytest.mark.asyncio
    async def test_late_answer_discarded(self, cd48: CD48, mock_device):
        mock_device.responses["x"] = lambda command: None
        with pytest.raises(CommandTimeoutError):
            await cd48.dispatcher.dispatch_once("x")
        mock_device.channel.feed("late answer\r\n")
        await asyncio.sleep(0)

        assert await cd48.get_version() == "CD48 v1.0.0"

    @pytest.mark.asyncio
    async def test_eof_is_communication_error(self, mock_host, mock_device):
        cd48 = CD48(fast_options(command_retries=0), host=mock_host)
        await cd48.connect()
        mock_device.responses["x"] = lambda command: None
        mock_device.channel.reader.feed_eof()

        with pytest.raises(CommunicationError):
            await cd48.send_command("x")
        await cd48.close()

    @pytest.mark.asyncio
    async def test_write_failure_is_communication_error(self, mock_host, mock_device):
        cd48 = CD48(fast_options(command_retries=1), host=mock_host)
        await cd48.connect()
        mock_device.channel.writer.close()

        with pytest.raises(CommunicationError) as excinfo:
            await cd48.send_command("v")
        assert isinstance(excinfo.value.original_error, OSError)
        await cd48.close()

    @pytest.mark.asyncio
    async def test_rate_limited_commands(self, mock_host, mock_device):
        cd48 = CD48(fast_options(rate_limit=0.1), host=mock_host)
        await cd48.connect()

        results = await asyncio.gather(*(cd48.get_version() for _ in range(3)))
        assert results == ["CD48 v1.0.0"] * 3
        times = mock_device.write_times
        assert len(times) == 3
        assert all(b - a >= 0.1 - 1e-3 for a, b in zip(times, times[1:]))
        await cd48.close()

    @pytest.mark.asyncio
    async def test_one_command_on_the_wire(self, cd48: CD48, mock_device):
        mock_device.response_delay = 0.02
        await asyncio.gather(*(cd48.send_command(f"x{i}") for i in range(5)))
        times = mock_device.write_times
        # each write waits for the previous response
        assert all(b - a >= 0.02 - 1e-3 for a, b in zip(times, times[1:]))
        assert mock_device.written == [f"x{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_exclusive_lock(self, mock_host, mock_device):
        cd48 = CD48(fast_options(use_exclusive_lock=True), host=mock_host)
        await cd48.connect()

        lock = exclusive_lock(cd48.options.exclusive_lock_name)
        async with lock:
            task = asyncio.create_task(cd48.get_version())
            await asyncio.sleep(0.05)
            assert not task.done()
            assert mock_device.writes == 0
        assert await task == "CD48 v1.0.0"
        await cd48.close()

    @pytest.mark.asyncio
    async def test_exclusive_lock_shared_between_devices(self):
        dev_a = MockSerialDevice(name="a", response_delay=0.02)
        dev_b = MockSerialDevice(name="b", response_delay=0.02)
        cd48_a = CD48(fast_options(use_exclusive_lock=True), host=MockSerialHost([dev_a]))
        cd48_b = CD48(fast_options(use_exclusive_lock=True), host=MockSerialHost([dev_b]))
        await cd48_a.connect()
        await cd48_b.connect()

        await asyncio.gather(cd48_a.get_version(), cd48_b.get_version())
        first, second = sorted([dev_a.write_times[0], dev_b.write_times[0]])
        assert second - first >= 0.02 - 1e-3
        await cd48_a.close()
        await cd48_b.close()
