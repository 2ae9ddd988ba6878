"""Tests for the CD48 typed commands, response parsing and firmware checks"""

import math

import pytest
import pytest_asyncio
from conftest import fast_options
from loguru import logger

from cd48.device import (
    CD48,
    Device,
    compare_firmware_versions,
    parse_counts,
    parse_firmware_version,
)
from cd48.device.mock import MockSerialDevice
from cd48.types import (
    CountData,
    FirmwareIncompatibleError,
    InvalidChannelError,
    InvalidResponseError,
    ValidationError,
)
from cd48.util import shutdown_client_log, start_client_log
from cd48.util.defaults import TEST_LOGLEVEL


def test_parse_counts():
    data = parse_counts("10 20 30 40 50 60 70 80 1")
    assert data == CountData(counts=(10, 20, 30, 40, 50, 60, 70, 80), overflow=1)
    assert data[3] == 40


def test_parse_counts_extra_whitespace():
    data = parse_counts("  10\t20 30 40 50 60 70 80   0 \r\n")
    assert data.counts[0] == 10
    assert data.overflow == 0


def test_parse_counts_too_few_fields():
    with pytest.raises(InvalidResponseError) as excinfo:
        parse_counts("10 20 30 40 50 60 70")
    assert excinfo.value.expected == "8 counts + overflow flag"
    assert excinfo.value.response == "10 20 30 40 50 60 70"


def test_parse_counts_non_integer():
    with pytest.raises(InvalidResponseError):
        parse_counts("10 20 30 40 50 60 70 x 0")


def test_parse_counts_channel_count():
    data = parse_counts("1 2 3 4 0", channel_count=4)
    assert data.counts == (1, 2, 3, 4)


@pytest.mark.parametrize(
    "version_string, expected",
    [
        ("CD48 v1.0.0", (1, 0, 0)),
        ("CD48 v2.3", (2, 3, 0)),
        ("firmware 10.20.30 build 7", (10, 20, 30)),
        ("no version here", (0, 0, 0)),
    ],
)
def test_parse_firmware_version(version_string, expected):
    assert parse_firmware_version(version_string) == expected


def test_compare_firmware_versions():
    assert compare_firmware_versions((1, 0, 0), (1, 0, 0)) == 0
    assert compare_firmware_versions((1, 0, 1), (1, 0, 0)) == 1
    assert compare_firmware_versions((0, 9, 9), (1, 0, 0)) == -1
    assert compare_firmware_versions((1, 10, 0), (1, 9, 0)) == 1


class TestCD48Commands:
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
        cd48 = CD48(fast_options(), host=mock_host)
        await cd48.connect()
        yield cd48
        await cd48.close()

    @pytest.mark.asyncio
    async def test_get_version(self, cd48: CD48):
        assert await cd48.get_version() == "CD48 v1.0.0"

    @pytest.mark.asyncio
    async def test_firmware_info(self, cd48: CD48, mock_device: MockSerialDevice):
        mock_device.version = "CD48 v1.2.3"
        info = await cd48.get_firmware_info()
        assert (info.major, info.minor, info.patch) == (1, 2, 3)
        assert info.version == "1.2.3"
        assert info.version_string == "CD48 v1.2.3"
        assert info.is_compatible
        assert info.minimum_version == "1.0.0"
        assert await cd48.check_firmware_compatibility() == info

    @pytest.mark.asyncio
    async def test_firmware_incompatible(self, cd48: CD48, mock_device):
        mock_device.version = "CD48 v0.9"
        info = await cd48.get_firmware_info()
        assert not info.is_compatible
        with pytest.raises(FirmwareIncompatibleError) as excinfo:
            await cd48.check_firmware_compatibility()
        assert excinfo.value.current_version == "0.9.0"
        assert excinfo.value.minimum_version == "1.0.0"

    @pytest.mark.asyncio
    async def test_get_help(self, cd48: CD48, mock_device):
        assert (await cd48.get_help()).startswith("CD48 commands")
        assert mock_device.written == ["H"]

    @pytest.mark.asyncio
    async def test_get_counts(self, cd48: CD48, mock_device):
        mock_device.queue_counts([10, 20, 30, 40, 50, 60, 70, 80], overflow=1)
        data = await cd48.get_counts()
        assert data.counts == (10, 20, 30, 40, 50, 60, 70, 80)
        assert data.overflow == 1
        assert mock_device.written == ["c"]

    @pytest.mark.asyncio
    async def test_get_counts_text(self, cd48: CD48, mock_device):
        mock_device.queue_counts([1, 2, 3, 4, 5, 6, 7, 8])
        text = await cd48.get_counts_text()
        assert text.startswith("ch0: 1, ch1: 2")
        assert mock_device.written == ["C"]

    @pytest.mark.asyncio
    async def test_clear_counts(self, cd48: CD48, mock_device):
        assert await cd48.clear_counts() is None
        assert mock_device.written == ["c"]

    @pytest.mark.asyncio
    async def test_get_settings(self, cd48: CD48, mock_device):
        await cd48.get_settings()
        assert await cd48.get_settings(human_readable=False) == "0 0 0 0 0 0 0 0 128 0"
        assert mock_device.written == ["P", "p"]

    @pytest.mark.asyncio
    async def test_set_channel(self, cd48: CD48, mock_device):
        assert await cd48.set_channel(3, a=1, c=1) == "OK"
        await cd48.set_channel(0, True, True, False, True)
        assert mock_device.written == ["S31010", "S01101"]

    @pytest.mark.asyncio
    async def test_set_channel_invalid(self, cd48: CD48, mock_device):
        with pytest.raises(InvalidChannelError):
            await cd48.set_channel(8)
        with pytest.raises(ValidationError):
            await cd48.set_channel(0, a=2)
        assert mock_device.written == []

    @pytest.mark.asyncio
    async def test_set_trigger_level(self, cd48: CD48, mock_device):
        await cd48.set_trigger_level(2.04)
        await cd48.set_trigger_level(10.0)
        await cd48.set_trigger_level(-1.0)
        await cd48.set_trigger_level(0.5)
        assert mock_device.written == ["L128", "L255", "L0", "L31"]

    @pytest.mark.asyncio
    async def test_impedance(self, cd48: CD48, mock_device):
        await cd48.set_impedance_50ohm()
        await cd48.set_impedance_highz()
        await cd48.set_impedance("50ohm")
        await cd48.set_impedance("HighZ")
        assert mock_device.written == ["z", "Z", "z", "Z"]
        with pytest.raises(ValidationError):
            await cd48.set_impedance("75ohm")

    @pytest.mark.asyncio
    async def test_set_repeat(self, cd48: CD48, mock_device):
        await cd48.set_repeat(1000)
        await cd48.set_repeat(50)
        await cd48.set_repeat(100000)
        await cd48.toggle_repeat()
        assert mock_device.written == ["r1000", "r100", "r65535", "R"]

    @pytest.mark.asyncio
    async def test_set_dac_voltage(self, cd48: CD48, mock_device):
        await cd48.set_dac_voltage(4.08)
        await cd48.set_dac_voltage(0.0)
        await cd48.set_dac_voltage(5.0)
        assert mock_device.written == ["V255", "V0", "V255"]

    @pytest.mark.asyncio
    async def test_nan_settings_rejected(self, cd48: CD48, mock_device):
        for setter in (cd48.set_trigger_level, cd48.set_dac_voltage, cd48.set_repeat):
            with pytest.raises(ValidationError):
                await setter(math.nan)
        assert mock_device.written == []

    @pytest.mark.asyncio
    async def test_get_overflow(self, cd48: CD48, mock_device):
        mock_device.responses["E"] = "5"
        assert await cd48.get_overflow() == 5

    @pytest.mark.asyncio
    async def test_get_overflow_invalid(self, cd48: CD48, mock_device):
        mock_device.responses["E"] = "garbage"
        with pytest.raises(InvalidResponseError):
            await cd48.get_overflow()
        assert mock_device.count_writes("E") == 1

    @pytest.mark.asyncio
    async def test_test_leds(self, cd48: CD48, mock_device):
        assert await cd48.test_leds() == "OK"
        assert mock_device.written == ["T"]

    @pytest.mark.asyncio
    async def test_metadata(self, cd48: CD48):
        meta = cd48.unroll_metadata()
        assert meta["connection_state"] == "connected"
        assert meta["port"] == "mock-cd48"
        assert meta["options"]["baudrate"] == 115200


class TestDevice:
    class Counter(Device):
        def __init__(self):
            self._connected = False

        async def open(self):
            self._connected = True
            return True, "opened"

        async def close(self):
            self._connected = False

        def is_connected(self) -> bool:
            return self._connected

    @pytest.mark.asyncio
    async def test_async_with(self):
        async with self.Counter() as counter:
            assert counter.is_connected()
        assert not counter.is_connected()
