# -*- coding: utf-8 -*-
"""
Device layer for the CD48 coincidence counter.

- `CD48`: the device facade (typed commands, measurements)
- `ConnectionManager`: channel ownership, state machine, reconnect
- `CommandDispatcher`: write/read exchange with retries
- `CommandSerializer`: FIFO admission with rate limiting
- `PySerialHost` / `MockSerialHost`: serial capabilities

Examples
--------
```python
from cd48.device import CD48
from cd48.device.mock import MockSerialHost

async with CD48(host=MockSerialHost()) as cd48:
    counts = await cd48.get_counts()
```

See Also
--------
cd48.meas : Measurements
cd48.types : Options, results and errors
"""

from .cd48 import (
    CD48,
    compare_firmware_versions,
    parse_counts,
    parse_firmware_version,
)
from .connection import (
    ConnectionManager,
    ConnectionState,
    ConnectionStateChange,
    ReconnectEvent,
    ReconnectFailedEvent,
)
from .device import Device
from .dispatcher import CommandDispatcher
from .host import PySerialHost, list_serial_ports
from .serializer import CommandSerializer, exclusive_lock
