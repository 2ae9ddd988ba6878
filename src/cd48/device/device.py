"""Device base class.

A `Device` is a piece of hardware reached through an asynchronous channel.
Implementations override the connection methods:

- open(): connect to the hardware
- close(): disconnect from the hardware
- is_connected(): check connection status

and get `async with` support for free.

Examples
--------
```python
class MyCounter(Device):
    async def open(self) -> tuple[bool, str]:
        ...
        return True, "Connected"

    async def close(self):
        ...

    def is_connected(self) -> bool:
        ...


async with MyCounter() as counter:
    ...
```
"""

from __future__ import annotations

from typing import TypeVar

D = TypeVar("D", bound="Device")


class Device:
    """Base class for asynchronous hardware devices."""

    async def open(self) -> tuple[bool, str]:
        raise NotImplementedError()

    async def close(self):
        raise NotImplementedError()

    def is_connected(self) -> bool:
        raise NotImplementedError()

    async def __aenter__(self: D) -> D:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
