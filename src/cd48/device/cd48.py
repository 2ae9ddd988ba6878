"""CD48 coincidence counter.

The `CD48` class wires the three layers of the command engine together:

1. `ConnectionManager` - owns the serial channel and its state machine,
   handles unplug and reconnect.
2. `CommandSerializer` - one command on the wire at a time, FIFO, with
   optional minimum spacing between commands.
3. `CommandDispatcher` - write/read exchange plus the retry policy.

On top of that it exposes the firmware's single-letter commands as typed
methods and the counting measurements.

Examples
--------
```python
async with CD48(CD48Options(auto_reconnect=True)) as cd48:
    print(await cd48.get_version())
    result = await cd48.measure_rate(channel=0, duration=2.0)
    print(f"{result.rate:.1f} +/- {result.uncertainty.rate:.1f} /s")
```
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Callable

from loguru import logger

from cd48.meas import counting
from cd48.types.config import CD48Options, CoincidenceOptions
from cd48.types.errors import FirmwareIncompatibleError, InvalidResponseError
from cd48.types.measurements import (
    CoincidenceMeasurement,
    CountData,
    FirmwareInfo,
    RateMeasurement,
)
from cd48.types.protocols import SerialHost
from cd48.types.validation import (
    clamp_repeat_interval,
    validate_channel,
    validate_impedance_mode,
    validate_input_flag,
    voltage_to_byte,
)
from cd48.util.defaults import CHANNEL_COUNT, MIN_FIRMWARE_VERSION

from .connection import (
    ConnectionManager,
    ConnectionState,
    ConnectionStateChange,
    ReconnectEvent,
    ReconnectFailedEvent,
)
from .device import Device
from .dispatcher import CommandDispatcher
from .serializer import CommandSerializer

_VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")

MIN_FIRMWARE_STRING = ".".join(str(v) for v in MIN_FIRMWARE_VERSION)


def parse_counts(response: str, channel_count: int = CHANNEL_COUNT) -> CountData:
    """Parse a counts response: `channel_count` integers then the overflow flag.

    Extra trailing fields are ignored.

    Raises
    ------
    InvalidResponseError
        Too few fields, or a field that is not an integer.
    """
    expected = f"{channel_count} counts + overflow flag"
    parts = response.split()
    if len(parts) < channel_count + 1:
        raise InvalidResponseError(response, expected)
    try:
        values = [int(p) for p in parts[: channel_count + 1]]
    except ValueError as err:
        raise InvalidResponseError(response, expected) from err
    return CountData(counts=tuple(values[:channel_count]), overflow=values[channel_count])


def parse_firmware_version(version_string: str) -> tuple[int, int, int]:
    """First `major.minor[.patch]` in the string, (0, 0, 0) if there is none."""
    match = _VERSION_RE.search(version_string)
    if match is None:
        return (0, 0, 0)
    major, minor, patch = match.groups()
    return (int(major), int(minor), int(patch or 0))


def compare_firmware_versions(a: tuple[int, int, int], b: tuple[int, int, int]) -> int:
    """-1, 0 or 1 as `a` is older than, equal to or newer than `b`."""
    return (a > b) - (a < b)


class CD48(Device):
    """Red Dog Physics CD48 coincidence counter.

    Parameters
    ----------
    options : CD48Options, optional
        Engine configuration, by default `CD48Options()`.
    host : SerialHost, optional
        Serial capability, by default `PySerialHost()`.
    """

    def __init__(
        self,
        options: CD48Options | None = None,
        host: SerialHost | None = None,
    ):
        if host is None:
            from .host import PySerialHost

            host = PySerialHost()
        self._options = options if options is not None else CD48Options()
        self._host = host
        self._connection = ConnectionManager(host, self._options)
        self._serializer = CommandSerializer(self._options.rate_limit)
        self._dispatcher = CommandDispatcher(self._connection, self._serializer)

    def __repr__(self):
        return f"CD48(state={self.connection_state.value!r})"

    @property
    def options(self) -> CD48Options:
        return self._options

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def serializer(self) -> CommandSerializer:
        return self._serializer

    @property
    def dispatcher(self) -> CommandDispatcher:
        return self._dispatcher

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def open(self) -> tuple[bool, str]:
        await self.connect()
        return True, f"Connected to CD48 on {self._connection.device.name}"

    async def close(self):
        await self._connection.close()

    async def connect(self) -> bool:
        return await self._connection.connect()

    async def disconnect(self) -> None:
        await self._connection.disconnect()

    async def reconnect(self) -> bool:
        return await self._connection.reconnect()

    def is_connected(self) -> bool:
        return self._connection.is_connected()

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection.state

    def on_connection_state_change(
        self, callback: Callable[[ConnectionStateChange], Any]
    ) -> Callable[[], None]:
        return self._connection.on_connection_state_change(callback)

    def on_disconnect(self, callback: Callable[[], Any]) -> Callable[[], None]:
        return self._connection.on_disconnect(callback)

    def on_reconnect(
        self, callback: Callable[[ReconnectEvent], Any]
    ) -> Callable[[], None]:
        return self._connection.on_reconnect(callback)

    def on_reconnect_failed(
        self, callback: Callable[[ReconnectFailedEvent], Any]
    ) -> Callable[[], None]:
        return self._connection.on_reconnect_failed(callback)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send_command(self, command: str) -> str:
        """Send a raw command and return the trimmed response."""
        return await self._dispatcher.send_command(command)

    async def get_version(self) -> str:
        return await self.send_command("v")

    async def get_firmware_info(self) -> FirmwareInfo:
        version_string = await self.get_version()
        version = parse_firmware_version(version_string)
        return FirmwareInfo(
            version_string=version_string,
            major=version[0],
            minor=version[1],
            patch=version[2],
            is_compatible=compare_firmware_versions(version, MIN_FIRMWARE_VERSION) >= 0,
            minimum_version=MIN_FIRMWARE_STRING,
        )

    async def check_firmware_compatibility(self) -> FirmwareInfo:
        """Firmware info, raising `FirmwareIncompatibleError` if too old."""
        info = await self.get_firmware_info()
        if not info.is_compatible:
            logger.error(
                "Firmware {} is older than the minimum {}",
                info.version,
                info.minimum_version,
            )
            raise FirmwareIncompatibleError(info.version, info.minimum_version)
        return info

    async def get_help(self) -> str:
        return await self.send_command("H")

    async def get_counts(self) -> CountData:
        """Read (and thereby clear) all counters."""
        channel_count = self._options.channel_count
        return await self._dispatcher.send_command(
            "c", lambda response: parse_counts(response, channel_count)
        )

    async def get_counts_text(self) -> str:
        """Human-readable counts."""
        return await self.send_command("C")

    async def clear_counts(self) -> None:
        await self.get_counts()

    async def get_settings(self, human_readable: bool = True) -> str:
        return await self.send_command("P" if human_readable else "p")

    async def set_channel(
        self, channel: int, a: int = 0, b: int = 0, c: int = 0, d: int = 0
    ) -> str:
        """Select which inputs (A-D) feed counter `channel`."""
        channel = validate_channel(channel, self._options.channel_count - 1)
        flags = "".join(
            str(validate_input_flag(name, value))
            for name, value in (("A", a), ("B", b), ("C", c), ("D", d))
        )
        return await self.send_command(f"S{channel}{flags}")

    async def set_trigger_level(self, voltage: float) -> str:
        """Set the input trigger threshold; clamped to 0-4.08 V."""
        return await self.send_command(f"L{voltage_to_byte(voltage)}")

    async def set_impedance_50ohm(self) -> str:
        return await self.send_command("z")

    async def set_impedance_highz(self) -> str:
        return await self.send_command("Z")

    async def set_impedance(self, mode: str) -> str:
        """Set input impedance, `mode` is "50ohm" or "highz"."""
        if validate_impedance_mode(mode) == "50ohm":
            return await self.set_impedance_50ohm()
        return await self.set_impedance_highz()

    async def set_repeat(self, interval_ms: float) -> str:
        """Set the automatic repeat interval; clamped to 100-65535 ms."""
        return await self.send_command(f"r{clamp_repeat_interval(interval_ms)}")

    async def toggle_repeat(self) -> str:
        return await self.send_command("R")

    async def set_dac_voltage(self, voltage: float) -> str:
        """Set the DAC output; clamped to 0-4.08 V."""
        return await self.send_command(f"V{voltage_to_byte(voltage)}")

    async def get_overflow(self) -> int:
        """Read and clear the 8-bit overflow flags."""

        def parse(response: str) -> int:
            try:
                return int(response)
            except ValueError as err:
                raise InvalidResponseError(response, "integer overflow flags") from err

        return await self._dispatcher.send_command("E", parse)

    async def test_leds(self) -> str:
        """Light all LEDs for one second."""
        return await self.send_command("T")

    # ------------------------------------------------------------------
    # Measurements
    # ------------------------------------------------------------------

    async def measure_rate(
        self,
        channel: int = 0,
        duration: float = 1.0,
        cancel: asyncio.Event | None = None,
    ) -> RateMeasurement:
        return await counting.measure_rate(self, channel, duration, cancel)

    async def measure_coincidence_rate(
        self,
        options: CoincidenceOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> CoincidenceMeasurement:
        return await counting.measure_coincidence_rate(self, options, cancel)

    async def measure_rate_series(
        self,
        channel: int = 0,
        duration: float = 1.0,
        repeats: int = 10,
        cancel: asyncio.Event | None = None,
    ) -> list[RateMeasurement]:
        return await counting.measure_rate_series(
            self, channel, duration, repeats, cancel
        )

    def unroll_metadata(self) -> dict[str, Any]:
        device = self._connection.device
        return {
            "options": self._options.to_dict(),
            "connection_state": self.connection_state.value,
            "port": device.name if device is not None else None,
        }
