"""Command admission: a baton-chain FIFO mutex with rate limiting.

Only one command may be on the wire at a time, and consecutive command writes
must start at least `rate_limit` seconds apart. Callers queue rather than poll:
each new caller installs a fresh pending future (its baton) as the tail of
the chain and waits on the previous tail. Exactly one holder at a time performs
the spacing check, and every holder releases its baton on the way out, so an
error in one command can never wedge the ones queued behind it.

Examples
--------
```python
serializer = CommandSerializer(rate_limit=0.1)

async with serializer.turn():
    writer.write(b"c\\r")
    ...  # read the response while still holding the baton
```
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import weakref
from typing import AsyncIterator, Callable

from loguru import logger


def _release(baton: asyncio.Future) -> None:
    if not baton.done():
        baton.set_result(None)


class CommandSerializer:
    """FIFO baton chain enforcing a minimum spacing between command starts.

    Parameters
    ----------
    rate_limit : float, optional
        Minimum number of seconds between the starts of consecutive turns,
        by default 0 (no spacing, mutual exclusion only).
    clock : Callable[[], float], optional
        Monotonic clock, by default `time.monotonic`.
    """

    def __init__(
        self, rate_limit: float = 0.0, clock: Callable[[], float] = time.monotonic
    ):
        self.rate_limit = rate_limit
        self._clock = clock
        self._tail: asyncio.Future | None = None
        self._last_command_time: float | None = None
        self._pending = 0

    @property
    def pending(self) -> int:
        """Number of callers holding or waiting for the baton."""
        return self._pending

    @property
    def last_command_time(self) -> float | None:
        return self._last_command_time

    @contextlib.asynccontextmanager
    async def turn(self) -> AsyncIterator[None]:
        """Wait for our place in the queue, then hold the baton.

        The baton is released when the block exits, whether normally or by
        exception. A caller cancelled while still queued passes its baton on
        only once its own predecessor has released, so the chain never lets
        two holders through at once.
        """
        loop = asyncio.get_running_loop()
        previous = self._tail
        baton = loop.create_future()
        self._tail = baton
        self._pending += 1
        admitted = False
        try:
            if previous is not None and not previous.done():
                # shield: our cancellation must not complete the predecessor's baton
                await asyncio.shield(previous)
            admitted = True
            await self._wait_for_spacing()
            yield
        finally:
            self._pending -= 1
            if admitted or previous is None or previous.done():
                _release(baton)
            else:
                previous.add_done_callback(lambda _f: _release(baton))

    async def _wait_for_spacing(self) -> None:
        if self.rate_limit > 0 and self._last_command_time is not None:
            elapsed = self._clock() - self._last_command_time
            if elapsed < self.rate_limit:
                wait = self.rate_limit - elapsed
                logger.trace("Rate limit: waiting {:.3f}s before next command", wait)
                await asyncio.sleep(wait)
        self._last_command_time = self._clock()


# one registry per event loop: asyncio primitives must not cross loops
_EXCLUSIVE_LOCKS: weakref.WeakKeyDictionary[
    asyncio.AbstractEventLoop, dict[str, asyncio.Lock]
] = weakref.WeakKeyDictionary()


def exclusive_lock(name: str) -> asyncio.Lock:
    """Process-wide named lock, shared by every `CD48` in this event loop.

    Raises
    ------
    RuntimeError
        If called outside a running event loop.
    """
    loop = asyncio.get_running_loop()
    locks = _EXCLUSIVE_LOCKS.setdefault(loop, {})
    if name not in locks:
        locks[name] = asyncio.Lock()
    return locks[name]
