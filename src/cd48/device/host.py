"""Serial host backed by pyserial and pyserial-asyncio.

Ports are enumerated with `serial.tools.list_ports` and filtered by USB vendor
id. There is no interactive chooser: `request_device` grants the first
matching port. Opening a port uses `serial_asyncio.open_serial_connection`,
which gives us an `asyncio.StreamReader`/`StreamWriter` pair.

pyserial has no unplug notification, so an open device polls the port list
and notifies its listeners once the port disappears.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import serial
import serial.tools.list_ports
import serial_asyncio
from loguru import logger

from cd48.types.errors import DeviceSelectionCancelledError
from cd48.util.defaults import DEFAULT_UNPLUG_POLL_INTERVAL


def list_serial_ports(vendor_id: int | None = None) -> list:
    """Hardware serial ports, optionally filtered by USB vendor id."""
    ports = []
    for p in list(serial.tools.list_ports.comports()):
        if p.hwid == "n/a":
            continue
        if vendor_id is not None and p.vid != vendor_id:
            continue
        ports.append(p)
    return ports


def _port_present(device: str) -> bool:
    return any(p.device == device for p in serial.tools.list_ports.comports())


class PySerialChannel:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        on_close: Callable[[], None],
    ):
        self._reader = reader
        self._writer = writer
        self._on_close = on_close
        self._closed = False

    @property
    def reader(self) -> asyncio.StreamReader:
        return self._reader

    @property
    def writer(self) -> asyncio.StreamWriter:
        return self._writer

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._on_close()
        if not self._writer.is_closing():
            self._writer.close()


class PySerialDevice:
    """One USB-serial port, as listed by pyserial."""

    def __init__(self, port_info, poll_interval: float = DEFAULT_UNPLUG_POLL_INTERVAL):
        self.port_info = port_info
        self.poll_interval = poll_interval
        self._listeners: list[Callable[[], None]] = []
        self._watch_task: asyncio.Task | None = None

    def __repr__(self):
        return f"PySerialDevice({self.name!r}, vid={self.vendor_id!r})"

    @property
    def vendor_id(self) -> int | None:
        return self.port_info.vid

    @property
    def name(self) -> str:
        return self.port_info.device

    async def open(self, baudrate: int) -> PySerialChannel:
        reader, writer = await serial_asyncio.open_serial_connection(
            url=self.name, baudrate=baudrate
        )
        self._watch_task = asyncio.get_running_loop().create_task(self._watch())
        return PySerialChannel(reader, writer, self._stop_watch)

    def add_unplug_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_unplug_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _stop_watch(self) -> None:
        if self._watch_task is not None and not self._watch_task.done():
            self._watch_task.cancel()
        self._watch_task = None

    async def _watch(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.poll_interval)
            # comports() can block on some platforms
            present = await loop.run_in_executor(None, _port_present, self.name)
            if not present:
                break
        logger.warning("Serial port {} disappeared", self.name)
        self._watch_task = None
        for listener in list(self._listeners):
            listener()


class PySerialHost:
    """Host serial capability over the local machine's USB-serial ports."""

    def __init__(self, poll_interval: float = DEFAULT_UNPLUG_POLL_INTERVAL):
        self.poll_interval = poll_interval
        self._authorized: dict[str, PySerialDevice] = {}

    def is_supported(self) -> bool:
        try:
            serial.tools.list_ports.comports()
        except (OSError, serial.SerialException):
            logger.opt(exception=True).debug("Serial port enumeration failed")
            return False
        return True

    async def request_device(self, vendor_id: int) -> PySerialDevice:
        loop = asyncio.get_running_loop()
        ports = await loop.run_in_executor(None, list_serial_ports, vendor_id)
        if not ports:
            logger.error("No serial port with vendor id {:#06x} found", vendor_id)
            raise DeviceSelectionCancelledError()
        port = ports[0]
        if len(ports) > 1:
            logger.warning(
                "{} ports match vendor id {:#06x}, using {}",
                len(ports),
                vendor_id,
                port.device,
            )
        device = self._authorized.get(port.device)
        if device is None:
            device = PySerialDevice(port, self.poll_interval)
            self._authorized[port.device] = device
        return device

    async def authorized_devices(self) -> list[PySerialDevice]:
        loop = asyncio.get_running_loop()
        present = await loop.run_in_executor(None, list_serial_ports, None)
        names = {p.device for p in present}
        return [dev for name, dev in self._authorized.items() if name in names]
