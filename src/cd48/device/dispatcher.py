"""Command dispatch over the CD48 half-duplex text protocol.

`dispatch_once` performs one write+read exchange while holding the
serializer's baton; `send_command` wraps it in the retry policy (and,
optionally, in the process-wide exclusive lock).

Wire format
-----------
Commands are ASCII text terminated by a carriage return. A response is
complete as soon as the accumulated buffer contains a CR or LF; it is
returned trimmed. Input already waiting before a write is discarded, and
terminators at the start of the buffer are dropped, so a late or split
line from one exchange is never taken as the answer to the next. The
deadline for one exchange runs from write completion, so neither the time
spent queued behind other commands nor the rate-limit spacing counts
against it.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Callable, TypeVar

from loguru import logger

from cd48.types.errors import (
    CD48Error,
    CommandTimeoutError,
    CommunicationError,
    NotConnectedError,
)
from cd48.util.defaults import LINE_TERMINATOR, READ_CHUNK_SIZE, RESPONSE_TERMINATORS

from .serializer import exclusive_lock

if TYPE_CHECKING:
    from cd48.types.config import CD48Options
    from cd48.types.protocols import SerialChannel

    from .connection import ConnectionManager
    from .serializer import CommandSerializer

T = TypeVar("T")

_TERMINATOR_BYTES = tuple(t.encode("ascii") for t in RESPONSE_TERMINATORS)
_LEADING_TERMINATORS = "".join(RESPONSE_TERMINATORS).encode("ascii")


def _is_complete(buffer: bytearray) -> bool:
    return any(t in buffer for t in _TERMINATOR_BYTES)


class CommandDispatcher:
    """Sends commands on the channel owned by a `ConnectionManager`.

    Parameters
    ----------
    connection : ConnectionManager
        Owner of the channel and of the reconnect policy.
    serializer : CommandSerializer
        Admission control, shared by everything talking on this channel.
    clock : Callable[[], float], optional
        Monotonic clock used for the response deadline.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        serializer: CommandSerializer,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._connection = connection
        self._serializer = serializer
        self._clock = clock

    @property
    def options(self) -> CD48Options:
        return self._connection.options

    async def send_command(
        self, command: str, parse: Callable[[str], T] | None = None
    ) -> str | T:
        """Send `command`, retrying transient failures.

        Parameters
        ----------
        command : str
            Command text, without the line terminator.
        parse : Callable[[str], T], optional
            Applied to the response inside each attempt. A parse failure
            (`InvalidResponseError`) is not retryable, so it fails the call
            at once.

        Returns
        -------
        str | T
            The trimmed response, or `parse(response)`.
        """
        if self.options.use_exclusive_lock:
            lock = self._get_exclusive_lock()
            if lock is not None:
                async with lock:
                    return await self._send_with_retry(command, parse)
        return await self._send_with_retry(command, parse)

    def _get_exclusive_lock(self) -> asyncio.Lock | None:
        try:
            return exclusive_lock(self.options.exclusive_lock_name)
        except RuntimeError:
            logger.debug("Exclusive lock unavailable, continuing without it")
            return None

    async def _send_with_retry(
        self, command: str, parse: Callable[[str], T] | None
    ) -> str | T:
        retries = self.options.command_retries
        for attempt in range(retries + 1):
            try:
                response = await self.dispatch_once(command)
                return parse(response) if parse is not None else response
            except CD48Error as err:
                if not err.retryable:
                    raise
                if attempt >= retries:
                    logger.error(
                        "Command {!r} failed after {} attempt(s): {}",
                        command,
                        attempt + 1,
                        err,
                    )
                    raise
                logger.warning(
                    "Command {!r} attempt {}/{} failed: {}",
                    command,
                    attempt + 1,
                    retries + 1,
                    err,
                )
                await asyncio.sleep(self.options.retry_delay * (attempt + 1))
        raise AssertionError("unreachable")  # pragma: no cover

    async def dispatch_once(self, command: str) -> str:
        """One write+read exchange, without retries.

        Raises
        ------
        NotConnectedError
            No channel (and reconnecting was not allowed or failed).
        CommandTimeoutError
            Nothing arrived before the deadline.
        CommunicationError
            The channel failed or closed under us.
        """
        await self._connection.ensure_connected(command)
        async with self._serializer.turn():
            # the channel may have dropped while we were queued
            if not self._connection.is_connected():
                raise NotConnectedError(command)
            return await self._exchange(self._connection.channel, command)

    async def _exchange(self, channel: SerialChannel, command: str) -> str:
        opts = self.options
        await self._discard_pending(channel, command)
        logger.trace("TX: {!r}", command)
        try:
            channel.writer.write((command + LINE_TERMINATOR).encode("ascii"))
            await channel.writer.drain()
        except OSError as err:
            raise CommunicationError(f"write of {command!r} failed: {err}", err) from err

        deadline = self._clock() + opts.command_timeout
        if opts.command_delay > 0:
            await asyncio.sleep(opts.command_delay)

        buffer = bytearray()
        while not _is_complete(buffer):
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            try:
                chunk = await asyncio.wait_for(
                    channel.reader.read(READ_CHUNK_SIZE),
                    min(opts.read_poll_interval, remaining),
                )
            except asyncio.TimeoutError:
                continue
            except OSError as err:
                raise CommunicationError(
                    f"read after {command!r} failed: {err}", err
                ) from err
            if not chunk:
                if buffer:
                    break
                raise CommunicationError(f"channel closed while waiting for {command!r}")
            buffer.extend(chunk)
            # a terminator left over from the previous response
            buffer = buffer.lstrip(_LEADING_TERMINATORS)

        if not buffer:
            raise CommandTimeoutError(command, opts.command_timeout)
        if not _is_complete(buffer):
            logger.debug("Returning partial response to {!r} at deadline", command)

        response = buffer.decode("ascii", errors="replace").strip()
        logger.trace("RX: {!r}", response)
        return response

    async def _discard_pending(self, channel: SerialChannel, command: str) -> None:
        """Drop bytes already buffered on the reader before a new write.

        Late answers to a timed-out attempt, or the LF of a split CR LF,
        would otherwise be read as the answer to `command`. Only data that
        has already arrived is dropped; this never waits.
        """
        discarded = bytearray()
        while True:
            try:
                async with asyncio.timeout(0):
                    chunk = await channel.reader.read(READ_CHUNK_SIZE)
            except TimeoutError:
                break
            except OSError as err:
                raise CommunicationError(
                    f"read before {command!r} failed: {err}", err
                ) from err
            if not chunk:
                break
            discarded.extend(chunk)
        if discarded:
            logger.debug(
                "Discarded stale input before {!r}: {!r}", command, bytes(discarded)
            )
