"""Connection life-cycle for the single CD48 serial channel.

The `ConnectionManager` owns the channel handle and a four-state machine:

```
DISCONNECTED -> CONNECTING | RECONNECTING
CONNECTING   -> CONNECTED  | DISCONNECTED
CONNECTED    -> RECONNECTING | DISCONNECTED
RECONNECTING -> CONNECTED  | DISCONNECTED
```

`_set_state` is the only mutator and rejects any other edge. Its state is the
single source of truth for whether the channel can be used right now: the
handle exists exactly when the state is CONNECTED (or a setup routine is in
the middle of creating it).

Unplug events from the host tear the handle down and, with `auto_reconnect`,
start the auto-reconnect sequence: attempt `n` sleeps `reconnect_delay * n`
and calls `reconnect()`. Only one sequence runs at a time; anyone else who
needs the device while it runs (e.g. a command issued while disconnected)
awaits the same sequence and sees the same outcome.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from cd48.types.errors import (
    CD48Error,
    ConnectionFailedError,
    NotConnectedError,
    UnsupportedCapabilityError,
)

if TYPE_CHECKING:
    from cd48.types.config import CD48Options
    from cd48.types.protocols import SerialChannel, SerialDevice, SerialHost


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.RECONNECTING}
    ),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
}


@dataclass(frozen=True)
class ConnectionStateChange:
    previous: ConnectionState
    current: ConnectionState


@dataclass(frozen=True)
class ReconnectEvent:
    attempt: int


@dataclass(frozen=True)
class ReconnectFailedEvent:
    attempts: int


_CLOSE_TIMEOUT = 1.0  # seconds, per teardown step


class ConnectionManager:
    """Owns the serial channel and the connection state machine.

    Parameters
    ----------
    host : SerialHost
        Provider of serial devices.
    options : CD48Options
        Engine configuration (baud rate, vendor id, reconnect policy...).
    """

    def __init__(self, host: SerialHost, options: CD48Options):
        self._host = host
        self._options = options
        self._state = ConnectionState.DISCONNECTED
        self._device: SerialDevice | None = None
        self._channel: SerialChannel | None = None
        self._reconnecting = False
        self._auto_reconnect_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._listeners: dict[str, list[Callable]] = {
            "state": [],
            "disconnect": [],
            "reconnect": [],
            "reconnect_failed": [],
        }

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def channel(self) -> SerialChannel | None:
        return self._channel

    @property
    def device(self) -> SerialDevice | None:
        return self._device

    @property
    def options(self) -> CD48Options:
        return self._options

    def is_connected(self) -> bool:
        return self._channel is not None and self._state is ConnectionState.CONNECTED

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_connection_state_change(
        self, callback: Callable[[ConnectionStateChange], Any]
    ) -> Callable[[], None]:
        """Register a state-change callback; returns an unsubscribe function."""
        return self._subscribe("state", callback)

    def on_disconnect(self, callback: Callable[[], Any]) -> Callable[[], None]:
        return self._subscribe("disconnect", callback)

    def on_reconnect(
        self, callback: Callable[[ReconnectEvent], Any]
    ) -> Callable[[], None]:
        return self._subscribe("reconnect", callback)

    def on_reconnect_failed(
        self, callback: Callable[[ReconnectFailedEvent], Any]
    ) -> Callable[[], None]:
        return self._subscribe("reconnect_failed", callback)

    def _subscribe(self, kind: str, callback: Callable) -> Callable[[], None]:
        self._listeners[kind].append(callback)

        def unsubscribe():
            if callback in self._listeners[kind]:
                self._listeners[kind].remove(callback)

        return unsubscribe

    def _emit(self, kind: str, *args) -> None:
        for callback in list(self._listeners[kind]):
            try:
                callback(*args)
            except Exception:
                logger.exception("Error in '{}' callback {}", kind, callback)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        previous = self._state
        if new_state is previous:
            return
        if new_state not in _TRANSITIONS[previous]:
            raise RuntimeError(
                f"Invalid connection state transition: {previous.value} -> "
                + f"{new_state.value}"
            )
        self._state = new_state
        logger.info("Connection state: {} -> {}", previous.value, new_state.value)
        self._emit("state", ConnectionStateChange(previous, new_state))

    # ------------------------------------------------------------------
    # Connect / reconnect / disconnect
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Select a device by vendor id and open it.

        Raises
        ------
        UnsupportedCapabilityError
            If the host has no serial capability.
        DeviceSelectionCancelledError
            If no device was selected.
        ConnectionFailedError
            If opening the device failed (wraps the cause).
        """
        if not self._host.is_supported():
            raise UnsupportedCapabilityError("serial")
        if self._reconnecting or self._state is ConnectionState.CONNECTING:
            raise ConnectionFailedError("another connection attempt is in progress")
        if self._channel is not None:
            logger.warning("Already connected, disconnecting first")
            await self.disconnect()

        self._set_state(ConnectionState.CONNECTING)
        try:
            device = await self._host.request_device(self._options.vendor_id)
            await self._setup_connection(device)
        except BaseException as err:
            await self._teardown()
            self._set_state(ConnectionState.DISCONNECTED)
            if isinstance(err, CD48Error) or not isinstance(err, Exception):
                if isinstance(err, CD48Error):
                    logger.error("Connection failed: {}", err)
                raise
            logger.error("Connection failed: {}", err)
            raise ConnectionFailedError(str(err) or type(err).__name__, err) from err

        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to CD48 on {}", device.name)
        return True

    async def reconnect(self) -> bool:
        """Re-open a previously authorized device.

        Returns
        -------
        bool
            True once reconnected, False if another reconnect (or connect) is
            already running.

        Raises
        ------
        ConnectionFailedError
            If no previously authorized device matches, or opening it failed.
        """
        if self._reconnecting or self._state is ConnectionState.CONNECTING:
            return False

        self._reconnecting = True
        try:
            self._set_state(ConnectionState.RECONNECTING)
            try:
                await self._teardown()
                devices = await self._host.authorized_devices()
                device = next(
                    (d for d in devices if d.vendor_id == self._options.vendor_id),
                    None,
                )
                if device is None:
                    raise ConnectionFailedError(
                        "No previously connected CD48 device found"
                    )
                await self._setup_connection(device)
            except BaseException as err:
                await self._teardown()
                self._set_state(ConnectionState.DISCONNECTED)
                if isinstance(err, CD48Error) or not isinstance(err, Exception):
                    raise
                raise ConnectionFailedError(
                    str(err) or type(err).__name__, err
                ) from err
            self._set_state(ConnectionState.CONNECTED)
            logger.info("Reconnected to CD48 on {}", device.name)
            return True
        finally:
            self._reconnecting = False

    async def disconnect(self) -> None:
        """Tear the channel down (best-effort) and go to DISCONNECTED."""
        await self._cancel_auto_reconnect()
        await self._teardown()
        self._set_state(ConnectionState.DISCONNECTED)
        self._emit("disconnect")

    async def close(self) -> None:
        """Disconnect and stop all background work."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.disconnect()

    async def ensure_connected(self, operation: str) -> SerialChannel:
        """Return the open channel, reconnecting first if allowed.

        Raises
        ------
        NotConnectedError
            If there is no channel and it could not be (re)established.
        """
        if self.is_connected():
            return self._channel
        if self._options.auto_reconnect:
            logger.info("'{}' issued while disconnected, reconnecting", operation)
            if await self.auto_reconnect() and self.is_connected():
                return self._channel
        raise NotConnectedError(operation)

    # ------------------------------------------------------------------
    # Auto-reconnect
    # ------------------------------------------------------------------

    async def auto_reconnect(self) -> bool:
        """Run the auto-reconnect sequence, or join the one already running."""
        task = self._auto_reconnect_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._auto_reconnect_sequence()
            )
            self._auto_reconnect_task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return False
            raise

    async def _auto_reconnect_sequence(self) -> bool:
        attempts = self._options.reconnect_attempts
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self._options.reconnect_delay * attempt)
            if self.is_connected():
                # reconnected elsewhere while we slept; that path reports itself
                return True
            logger.warning("Reconnect attempt {}/{}", attempt, attempts)
            try:
                if await self.reconnect():
                    self._emit("reconnect", ReconnectEvent(attempt))
                    return True
            except CD48Error as err:
                logger.warning("Reconnect attempt {} failed: {}", attempt, err)

        logger.error("Giving up after {} reconnect attempts", attempts)
        self._emit("reconnect_failed", ReconnectFailedEvent(attempts))
        return False

    async def _cancel_auto_reconnect(self) -> None:
        task = self._auto_reconnect_task
        self._auto_reconnect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    # ------------------------------------------------------------------
    # Unplug handling
    # ------------------------------------------------------------------

    def _handle_unplug(self) -> None:
        """Listener subscribed on the open device."""
        name = self._device.name if self._device is not None else "?"
        logger.warning("CD48 on {} was unplugged", name)
        task = asyncio.get_running_loop().create_task(self._on_unplugged())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _on_unplugged(self) -> None:
        setting_up = self._state in (
            ConnectionState.CONNECTING,
            ConnectionState.RECONNECTING,
        )
        await self._teardown()
        if setting_up:
            # the setup in progress finds its channel gone and fails
            return
        self._set_state(ConnectionState.DISCONNECTED)
        self._emit("disconnect")
        if self._options.auto_reconnect:
            await self.auto_reconnect()

    # ------------------------------------------------------------------
    # Channel setup / teardown
    # ------------------------------------------------------------------

    async def _setup_connection(self, device: SerialDevice) -> None:
        channel = await device.open(self._options.baudrate)
        self._device = device
        self._channel = channel
        device.add_unplug_listener(self._handle_unplug)
        logger.debug(
            "Opened {} at {} baud, waiting {}s for firmware",
            device.name,
            self._options.baudrate,
            self._options.connection_init_delay,
        )
        await asyncio.sleep(self._options.connection_init_delay)
        if self._channel is not channel:
            raise ConnectionFailedError("device unplugged during setup")

    async def _teardown(self) -> None:
        """Release reader, writer and port; every step is independent."""
        device, channel = self._device, self._channel
        self._device = None
        self._channel = None

        if device is not None:
            try:
                device.remove_unplug_listener(self._handle_unplug)
            except Exception:
                logger.opt(exception=True).debug("Ignoring unplug-listener cleanup error")

        if channel is None:
            return

        try:
            channel.reader.feed_eof()
        except Exception:
            logger.opt(exception=True).debug("Ignoring reader cleanup error")

        try:
            channel.writer.close()
            await asyncio.wait_for(channel.writer.wait_closed(), _CLOSE_TIMEOUT)
        except Exception:
            logger.opt(exception=True).debug("Ignoring writer cleanup error")

        try:
            await asyncio.wait_for(channel.close(), _CLOSE_TIMEOUT)
        except Exception:
            logger.opt(exception=True).debug("Ignoring port cleanup error")
