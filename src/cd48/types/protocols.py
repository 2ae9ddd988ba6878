"""Protocols for the host serial capability the engine is built on.

The connection manager never touches pyserial directly. It talks to a
`SerialHost`, which hands out `SerialDevice`s, which open into a
`SerialChannel` (a reader/writer stream pair). Anything implementing these
protocols can back a `CD48`:

1. `cd48.device.host.PySerialHost` - real USB-serial ports via pyserial and
   pyserial-asyncio.
2. `cd48.device.mock.MockSerialHost` - an in-memory counter for tests and
   the CLI `--mock` mode.

The Protocol Pattern
-------------------
As with the rest of the package, we use `typing.Protocol` rather than base
classes, so hosts only need the right methods:

- Duck typing - a host only needs to implement the required methods
- Type safety - mypy can check protocol compliance
- Runtime validation - @runtime_checkable allows isinstance() checks

Example
-------
    class MyHost:
        def is_supported(self) -> bool: ...
        async def request_device(self, vendor_id: int) -> SerialDevice: ...
        async def authorized_devices(self) -> list[SerialDevice]: ...

    cd48 = CD48(host=MyHost())
"""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

UnplugListener = Callable[[], None]


@runtime_checkable
class StreamReaderProtocol(Protocol):
    async def read(self, n: int = -1) -> bytes:
        """Read up to `n` bytes; `b''` means end of stream."""
        ...

    def feed_eof(self) -> None:
        """Wake any pending read with end of stream."""
        ...


@runtime_checkable
class StreamWriterProtocol(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


@runtime_checkable
class SerialChannel(Protocol):
    """An open duplex byte channel."""

    @property
    def reader(self) -> StreamReaderProtocol: ...

    @property
    def writer(self) -> StreamWriterProtocol: ...

    async def close(self) -> None:
        """Close the underlying port. Must be safe to call twice."""
        ...


@runtime_checkable
class SerialDevice(Protocol):
    """A serial device known to the host (not necessarily open)."""

    @property
    def vendor_id(self) -> int | None: ...

    @property
    def name(self) -> str: ...

    async def open(self, baudrate: int) -> SerialChannel: ...

    def add_unplug_listener(self, listener: UnplugListener) -> None: ...

    def remove_unplug_listener(self, listener: UnplugListener) -> None: ...


@runtime_checkable
class SerialHost(Protocol):
    """Host-side serial capability."""

    def is_supported(self) -> bool: ...

    async def request_device(self, vendor_id: int) -> SerialDevice:
        """Select a device with the given USB vendor id.

        Raises
        ------
        DeviceSelectionCancelledError
            If no device was selected.
        """
        ...

    async def authorized_devices(self) -> list[SerialDevice]:
        """Devices previously granted by `request_device`."""
        ...
