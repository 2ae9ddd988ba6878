"""Configuration types for the device engine and measurements."""

from __future__ import annotations

from dataclasses import dataclass

import simplejson as json
from mashumaro import DataClassDictMixin

from cd48.util.defaults import (
    CHANNEL_COUNT,
    COINCIDENCE_WINDOW,
    DEFAULT_BAUDRATE,
    DEFAULT_COINCIDENCE_CHANNEL,
    DEFAULT_COMMAND_DELAY,
    DEFAULT_CONNECTION_INIT_DELAY,
    DEFAULT_MEASUREMENT_DURATION,
    DEFAULT_RATE_LIMIT,
    DEFAULT_READ_POLL_INTERVAL,
    DEFAULT_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SINGLES_A_CHANNEL,
    DEFAULT_SINGLES_B_CHANNEL,
    DEFAULT_TIMEOUT,
    DEFAULT_VENDOR_ID,
    EXCLUSIVE_LOCK_NAME,
)

from .errors import ValidationError
from .validation import validate_channel, validate_duration, validate_non_negative


@dataclass(frozen=True, kw_only=True)
class CD48Options(DataClassDictMixin):
    """Immutable engine configuration.

    All durations are in seconds.

    Attributes
    ----------
    baudrate : int
        Serial baud rate.
    command_delay : float
        Settle time after each write, before reading starts.
    command_timeout : float
        Round-trip deadline for one command attempt, measured from write
        completion.
    read_poll_interval : float
        Upper bound on a single channel read, so the deadline is noticed
        even when the device stays silent.
    connection_init_delay : float
        Wait after opening the port while the firmware boots.
    command_retries : int
        Extra attempts for retryable failures (timeouts, I/O errors).
    retry_delay : float
        Base backoff; attempt `n` waits `retry_delay * n`.
    rate_limit : float
        Minimum spacing between the starts of consecutive commands.
    auto_reconnect : bool
        Reconnect automatically on unplug, or when a command is issued while
        disconnected.
    reconnect_attempts : int
        Attempts made by one auto-reconnect sequence.
    reconnect_delay : float
        Base backoff; attempt `n` waits `reconnect_delay * n`.
    use_exclusive_lock : bool
        Run every retry-wrapped command inside a process-wide named lock.
    exclusive_lock_name : str
        Name of that lock.
    vendor_id : int
        USB vendor id used to find the device.
    channel_count : int
        Number of counter channels reported by the counts command.
    """

    baudrate: int = DEFAULT_BAUDRATE
    command_delay: float = DEFAULT_COMMAND_DELAY
    command_timeout: float = DEFAULT_TIMEOUT
    read_poll_interval: float = DEFAULT_READ_POLL_INTERVAL
    connection_init_delay: float = DEFAULT_CONNECTION_INIT_DELAY
    command_retries: int = DEFAULT_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    rate_limit: float = DEFAULT_RATE_LIMIT
    auto_reconnect: bool = False
    reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    use_exclusive_lock: bool = False
    exclusive_lock_name: str = EXCLUSIVE_LOCK_NAME
    vendor_id: int = DEFAULT_VENDOR_ID
    channel_count: int = CHANNEL_COUNT

    def __post_init__(self):
        if self.baudrate <= 0:
            raise ValidationError("baudrate", self.baudrate, "must be > 0")
        validate_duration(self.command_timeout, "command_timeout")
        validate_duration(self.read_poll_interval, "read_poll_interval")
        for name in (
            "command_delay",
            "connection_init_delay",
            "retry_delay",
            "rate_limit",
            "reconnect_delay",
        ):
            validate_non_negative(getattr(self, name), name)
        for name in ("command_retries", "reconnect_attempts"):
            if getattr(self, name) < 0:
                raise ValidationError(name, getattr(self, name), "must be >= 0")
        if self.channel_count < 1:
            raise ValidationError("channel_count", self.channel_count, "must be >= 1")

    @classmethod
    def from_json_file(cls, path: str) -> CD48Options:
        """Load options from a JSON file; missing keys keep their defaults."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


@dataclass(frozen=True, kw_only=True)
class CoincidenceOptions(DataClassDictMixin):
    """Parameters of one coincidence-rate measurement window."""

    duration: float = DEFAULT_MEASUREMENT_DURATION
    singles_a_channel: int = DEFAULT_SINGLES_A_CHANNEL
    singles_b_channel: int = DEFAULT_SINGLES_B_CHANNEL
    coincidence_channel: int = DEFAULT_COINCIDENCE_CHANNEL
    coincidence_window: float = COINCIDENCE_WINDOW

    def validate(self, channel_max: int) -> None:
        validate_duration(self.duration)
        validate_channel(self.singles_a_channel, channel_max)
        validate_channel(self.singles_b_channel, channel_max)
        validate_channel(self.coincidence_channel, channel_max)
        validate_non_negative(self.coincidence_window, "coincidence_window")
