from __future__ import annotations

import asyncio
import time
from typing import Callable, Sequence

import numpy as np
import numpy.random
from loguru import logger

from cd48.types.errors import DeviceSelectionCancelledError
from cd48.util.defaults import CHANNEL_COUNT, DEFAULT_VENDOR_ID

Responder = Callable[[str], "str | None"]

# per-command fallbacks, looked up by the first character of the command
DEFAULT_RESPONSES: dict[str, str] = {
    "v": "CD48 v1.0.0",
    "H": "CD48 commands: v c C p P S L z Z r R V E T H",
    "p": "0 0 0 0 0 0 0 0 128 0",
    "P": "Trigger level: 128, Impedance: 50 ohm, Repeat: off",
    "E": "0",
    "T": "OK",
}


class MockStreamWriter:
    def __init__(self, device: MockSerialDevice):
        self._device = device
        self._closed = False

    def write(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionResetError("write on closed mock channel")
        self._device._receive(data)

    async def drain(self) -> None:
        if self._closed:
            raise ConnectionResetError("drain on closed mock channel")

    def close(self) -> None:
        self._closed = True

    def is_closing(self) -> bool:
        return self._closed

    async def wait_closed(self) -> None:
        pass


class MockStreamReader(asyncio.StreamReader):
    def __init__(self):
        super().__init__()
        self.eof_fed = False

    def feed_eof(self) -> None:
        self.eof_fed = True
        super().feed_eof()


class MockSerialChannel:
    def __init__(self, device: MockSerialDevice):
        self.device = device
        self._reader = MockStreamReader()
        self._writer = MockStreamWriter(device)
        self.closed = False

    @property
    def reader(self) -> MockStreamReader:
        return self._reader

    @property
    def writer(self) -> MockStreamWriter:
        return self._writer

    def feed(self, text: str) -> None:
        if not self.closed and not self._reader.eof_fed:
            self._reader.feed_data(text.encode("ascii"))

    async def close(self) -> None:
        self.closed = True
        self._writer.close()
        self._reader.feed_eof()


class MockSerialDevice:
    """In-memory CD48.

    Answers commands from `responses` (exact command first, then by first
    character), falling back to `DEFAULT_RESPONSES` and then "OK". A response
    can be a string or a callable taking the command text; returning None
    from a callable means "stay silent".

    The counts command `c` returns Poisson counts accumulated at `rates`
    (counts/s per channel) since the previous `c`, unless explicit frames were
    queued with `queue_counts`. Reading the counters clears them, as on the
    hardware.

    Parameters
    ----------
    name : str, optional
        Port name reported to the host.
    vendor_id : int, optional
        USB vendor id, by default the CD48's.
    version : str, optional
        Version string returned by `v`.
    rates : Sequence[float], optional
        Per-channel count rates (counts/s), by default all zero.
    response_delay : float, optional
        Seconds between receiving a command and answering it.
    seed : int, optional
        Seed for the count generator.
    """

    def __init__(
        self,
        name: str = "mock-cd48",
        vendor_id: int | None = DEFAULT_VENDOR_ID,
        version: str = "CD48 v1.0.0",
        rates: Sequence[float] | None = None,
        response_delay: float = 0.0,
        channel_count: int = CHANNEL_COUNT,
        seed: int | None = None,
    ):
        self._name = name
        self._vendor_id = vendor_id
        self.version = version
        self.channel_count = channel_count
        self.rates = list(rates) if rates is not None else [0.0] * channel_count
        self.response_delay = response_delay
        self.responses: dict[str, str | Responder] = {}
        self.written: list[str] = []
        self.write_times: list[float] = []
        self.open_count = 0
        self.fail_open = False
        self.unplugged = False
        self.channel: MockSerialChannel | None = None

        self._counts_queue: list[tuple[Sequence[int], int]] = []
        self._silent = 0
        self._rx = ""
        self._listeners: list[Callable[[], None]] = []
        self._last_clear = time.monotonic()
        self.__rng = numpy.random.default_rng(seed)

    def __repr__(self):
        return f"MockSerialDevice({self._name!r}, vid={self._vendor_id!r})"

    # SerialDevice protocol

    @property
    def vendor_id(self) -> int | None:
        return self._vendor_id

    @property
    def name(self) -> str:
        return self._name

    async def open(self, baudrate: int) -> MockSerialChannel:
        if self.unplugged or self.fail_open:
            raise OSError(f"could not open port {self._name}")
        self.open_count += 1
        self.channel = MockSerialChannel(self)
        self._rx = ""
        self._last_clear = time.monotonic()
        logger.debug("Mock CD48 {} opened at {} baud", self._name, baudrate)
        return self.channel

    def add_unplug_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_unplug_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    # test controls

    def queue_counts(self, counts: Sequence[int], overflow: int = 0) -> None:
        """Answer the next `c` with these counts."""
        self._counts_queue.append((tuple(counts), overflow))

    def go_silent(self, n: int = 1) -> None:
        """Ignore the next `n` commands (no response at all)."""
        self._silent += n

    def simulate_unplug(self) -> None:
        """Drop the channel and notify unplug listeners."""
        logger.debug("Mock CD48 {} unplugged", self._name)
        self.unplugged = True
        if self.channel is not None:
            self.channel.closed = True
            self.channel.reader.feed_eof()
        for listener in list(self._listeners):
            listener()

    def replug(self) -> None:
        self.unplugged = False

    @property
    def writes(self) -> int:
        return len(self.written)

    def count_writes(self, command: str) -> int:
        return sum(1 for w in self.written if w == command)

    # command handling

    def _receive(self, data: bytes) -> None:
        self._rx += data.decode("ascii")
        while "\r" in self._rx:
            command, self._rx = self._rx.split("\r", 1)
            self.written.append(command)
            self.write_times.append(time.monotonic())
            self._answer(command)

    def _answer(self, command: str) -> None:
        if self._silent > 0:
            self._silent -= 1
            return
        response = self._respond(command)
        if response is None:
            return
        channel = self.channel
        loop = asyncio.get_running_loop()
        if self.response_delay > 0:
            loop.call_later(self.response_delay, channel.feed, response)
        else:
            loop.call_soon(channel.feed, response)

    def _respond(self, command: str) -> str | None:
        handler = self.responses.get(command)
        if handler is None and command:
            handler = self.responses.get(command[0])
        if handler is not None:
            response = handler(command) if callable(handler) else handler
            return None if response is None else response + "\r\n"
        if command == "v":
            return self.version + "\r\n"
        if command == "c":
            return self._read_counts() + "\r\n"
        if command == "C":
            counts = self._read_counts().split()
            text = ", ".join(f"ch{i}: {n}" for i, n in enumerate(counts[:-1]))
            return f"{text}, overflow: {counts[-1]}\r\n"
        if command and command[0] in DEFAULT_RESPONSES:
            return DEFAULT_RESPONSES[command[0]] + "\r\n"
        return "OK\r\n"

    def _read_counts(self) -> str:
        if self._counts_queue:
            counts, overflow = self._counts_queue.pop(0)
        else:
            now = time.monotonic()
            elapsed = now - self._last_clear
            counts = self.__rng.poisson(np.asarray(self.rates) * elapsed).tolist()
            overflow = 0
        self._last_clear = time.monotonic()
        return " ".join(str(int(n)) for n in (*counts, overflow))


class MockSerialHost:
    """In-memory serial host handing out `MockSerialDevice`s.

    `request_device` grants the first device with a matching vendor id and
    remembers it, so `authorized_devices` can later return it.
    """

    def __init__(
        self,
        devices: Sequence[MockSerialDevice] | None = None,
        supported: bool = True,
    ):
        self.devices = list(devices) if devices is not None else [MockSerialDevice()]
        self.supported = supported
        self.cancel_selection = False
        self.request_calls = 0
        self.authorized_calls = 0
        self._authorized: list[MockSerialDevice] = []

    @property
    def device(self) -> MockSerialDevice:
        return self.devices[0]

    def is_supported(self) -> bool:
        return self.supported

    async def request_device(self, vendor_id: int) -> MockSerialDevice:
        self.request_calls += 1
        if self.cancel_selection:
            raise DeviceSelectionCancelledError()
        for dev in self.devices:
            if dev.vendor_id == vendor_id and not dev.unplugged:
                if dev not in self._authorized:
                    self._authorized.append(dev)
                return dev
        raise DeviceSelectionCancelledError()

    async def authorized_devices(self) -> list[MockSerialDevice]:
        self.authorized_calls += 1
        return [dev for dev in self._authorized if not dev.unplugged]
