"""Exception hierarchy for CD48 operations.

Every error raised by the package derives from `CD48Error`, so callers can
catch the whole family at once or pick out a single kind. Each error keeps
its context as attributes (command text, timeout, offending response,
parameter name/value/constraints...) so a caller can build its own message
without parsing ours.

The `retryable` class attribute drives the command retry loop in
`cd48.device.dispatcher`: only transient transport failures are retried.
"""

from __future__ import annotations

from typing import Any


class CD48Error(Exception):
    """Base exception for all CD48 errors."""

    retryable: bool = False


class UnsupportedCapabilityError(CD48Error):
    """The host has no usable serial capability."""

    def __init__(self, capability: str = "serial"):
        self.capability = capability
        super().__init__(
            f"Host does not provide the '{capability}' capability "
            + "(is pyserial installed and are serial ports enumerable?)."
        )


class DeviceSelectionCancelledError(CD48Error):
    """No device was selected (user declined, or nothing matched)."""

    def __init__(self):
        super().__init__("No CD48 device selected")


class ConnectionFailedError(CD48Error):
    """Opening or re-opening the channel failed."""

    def __init__(self, reason: str, cause: BaseException | None = None):
        self.reason = reason
        self.original_error = cause
        super().__init__(f"Connection failed: {reason}")


class NotConnectedError(CD48Error):
    """An operation needed an open channel and there was none."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(
            f"Cannot perform operation '{operation}' - device not connected. "
            + "Call connect() first."
        )


class CommandTimeoutError(CD48Error):
    """No response arrived before the command deadline."""

    retryable = True

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command '{command}' timed out after {timeout}s")


class InvalidResponseError(CD48Error):
    """The device answered, but with the wrong shape of payload."""

    def __init__(self, response: str, expected: str):
        self.response = response
        self.expected = expected
        super().__init__(
            f"Invalid response format. Got: '{response}', expected: {expected}"
        )


class CommunicationError(CD48Error):
    """Generic I/O failure on the channel."""

    retryable = True

    def __init__(self, reason: str, cause: BaseException | None = None):
        self.reason = reason
        self.original_error = cause
        super().__init__(f"Communication error: {reason}")


class OperationAbortedError(CD48Error):
    """The caller cancelled the operation."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Operation '{operation}' was aborted")


class ValidationError(CD48Error):
    """A parameter failed validation."""

    def __init__(self, parameter: str, value: Any, constraints: str):
        self.parameter = parameter
        self.value = value
        self.constraints = constraints
        super().__init__(
            f"Invalid parameter '{parameter}': {value!r}. Constraints: {constraints}"
        )


class InvalidChannelError(ValidationError):
    def __init__(self, channel: Any, channel_max: int = 7):
        super().__init__("channel", channel, f"0-{channel_max}")


class InvalidVoltageError(ValidationError):
    def __init__(self, voltage: Any):
        super().__init__("voltage", voltage, "0.0-4.08V")


class FirmwareIncompatibleError(CD48Error):
    """The connected device runs firmware older than we support."""

    def __init__(self, current_version: str, minimum_version: str):
        self.current_version = current_version
        self.minimum_version = minimum_version
        super().__init__(
            f"Firmware version {current_version} is not supported "
            + f"(minimum {minimum_version})"
        )
