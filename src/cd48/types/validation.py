"""Parameter validation and range conversion helpers.

The device accepts small integers on the wire (channel index, an 8-bit DAC
code, a repeat interval in ms). These helpers check user-facing values before
anything is sent, raising `ValidationError` subclasses that carry the
parameter name, the offending value and the allowed range.
"""

from __future__ import annotations

import math
from numbers import Integral, Real
from typing import Any

from cd48.util.defaults import (
    BYTE_MAX,
    BYTE_MIN,
    CHANNEL_MAX,
    CHANNEL_MIN,
    IMPEDANCE_MODES,
    REPEAT_INTERVAL_MAX,
    REPEAT_INTERVAL_MIN,
    VOLTAGE_MAX,
    VOLTAGE_MIN,
)

from .errors import InvalidChannelError, InvalidVoltageError, ValidationError


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, Real)
        and not isinstance(value, bool)
        and not math.isnan(value)
    )


def is_valid_channel(value: Any, channel_max: int = CHANNEL_MAX) -> bool:
    return (
        isinstance(value, Integral)
        and not isinstance(value, bool)
        and CHANNEL_MIN <= value <= channel_max
    )


def validate_channel(channel: Any, channel_max: int = CHANNEL_MAX) -> int:
    """Check a channel index.

    Parameters
    ----------
    channel : int
        Channel number.
    channel_max : int, optional
        Highest valid index, by default 7 (8-channel device).

    Returns
    -------
    int
        The channel, unchanged.

    Raises
    ------
    ValidationError
        If `channel` is not an integer.
    InvalidChannelError
        If `channel` is outside [0, channel_max].
    """
    if not _is_number(channel) or not isinstance(channel, Integral):
        raise ValidationError(
            "channel", channel, f"must be an integer between 0 and {channel_max}"
        )
    if not CHANNEL_MIN <= channel <= channel_max:
        raise InvalidChannelError(channel, channel_max)
    return int(channel)


def validate_voltage(voltage: Any) -> float:
    if not _is_number(voltage):
        raise ValidationError(
            "voltage", voltage, f"must be a number between {VOLTAGE_MIN} and {VOLTAGE_MAX}"
        )
    if not VOLTAGE_MIN <= voltage <= VOLTAGE_MAX:
        raise InvalidVoltageError(voltage)
    return float(voltage)


def validate_byte(value: Any) -> int:
    if not _is_number(value) or not isinstance(value, Integral):
        raise ValidationError("byte", value, "must be an integer between 0 and 255")
    if not BYTE_MIN <= value <= BYTE_MAX:
        raise ValidationError("byte", value, "0-255")
    return int(value)


def validate_repeat_interval(interval: Any) -> int:
    if not _is_number(interval):
        raise ValidationError(
            "repeat_interval",
            interval,
            f"must be a number between {REPEAT_INTERVAL_MIN} and {REPEAT_INTERVAL_MAX}",
        )
    if not REPEAT_INTERVAL_MIN <= interval <= REPEAT_INTERVAL_MAX:
        raise ValidationError(
            "repeat_interval",
            interval,
            f"{REPEAT_INTERVAL_MIN}-{REPEAT_INTERVAL_MAX} ms",
        )
    return int(interval)


def validate_duration(duration: Any, parameter: str = "duration") -> float:
    if not _is_number(duration) or math.isinf(duration):
        raise ValidationError(parameter, duration, "must be a finite positive number")
    if duration <= 0:
        raise ValidationError(parameter, duration, "must be greater than 0")
    return float(duration)


def validate_non_negative(value: Any, parameter: str) -> float:
    if not _is_number(value) or math.isinf(value) or value < 0:
        raise ValidationError(parameter, value, "must be a finite number >= 0")
    return float(value)


def validate_impedance_mode(mode: Any) -> str:
    if not isinstance(mode, str) or mode.lower() not in IMPEDANCE_MODES:
        raise ValidationError("impedance", mode, "must be '50ohm' or 'highz'")
    return mode.lower()


def validate_input_flag(name: str, value: Any) -> int:
    """Channel input selectors are single bits."""
    if isinstance(value, bool):
        return int(value)
    if value not in (0, 1):
        raise ValidationError(name, value, "must be 0 or 1")
    return int(value)


def clamp(value: float, vmin: float, vmax: float) -> float:
    return max(vmin, min(vmax, value))


def clamp_voltage(voltage: float) -> float:
    return clamp(voltage, VOLTAGE_MIN, VOLTAGE_MAX)


def clamp_repeat_interval(interval: float) -> int:
    if not _is_number(interval):
        raise ValidationError("repeat_interval", interval, "must be a number")
    return int(clamp(interval, REPEAT_INTERVAL_MIN, REPEAT_INTERVAL_MAX))


def voltage_to_byte(voltage: float) -> int:
    """Convert a voltage to the device's 8-bit code, clamping to range."""
    if not _is_number(voltage):
        raise ValidationError("voltage", voltage, "must be a number")
    # round half up
    return math.floor(clamp_voltage(voltage) / VOLTAGE_MAX * BYTE_MAX + 0.5)


def byte_to_voltage(value: int) -> float:
    validate_byte(value)
    return value / BYTE_MAX * VOLTAGE_MAX
