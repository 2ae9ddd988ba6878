# -*- coding: utf-8 -*-
"""# cd48

Asynchronous Python driver for the Red Dog Physics CD48 coincidence counter.

- Connection handling over USB serial, with unplug detection and automatic
  reconnect.
- FIFO command serialization with optional rate limiting, timeouts and
  retries.
- Typed wrappers for the firmware's single-letter commands.
- Count-rate and coincidence-rate measurements with Poisson uncertainties.
- A `cd48` command line tool.

```python
import asyncio
from cd48 import CD48

async def main():
    async with CD48() as cd48:
        print(await cd48.measure_rate(channel=0, duration=1.0))

asyncio.run(main())
```
"""

from ._version import __version__
from .device import CD48
from .types import CD48Options, CoincidenceOptions
