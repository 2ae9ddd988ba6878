"""Tests for CD48Options and CoincidenceOptions"""

import dataclasses
import math

import pytest
import simplejson as json

from cd48.types import CD48Options, CoincidenceOptions, InvalidChannelError, ValidationError


def test_defaults():
    opts = CD48Options()
    assert opts.baudrate == 115200
    assert opts.command_timeout == 1.0
    assert opts.command_retries == 3
    assert opts.rate_limit == 0.0
    assert not opts.auto_reconnect
    assert not opts.use_exclusive_lock
    assert opts.vendor_id == 0x04B4
    assert opts.channel_count == 8


def test_options_are_frozen():
    opts = CD48Options()
    with pytest.raises(dataclasses.FrozenInstanceError):
        opts.baudrate = 9600
    changed = dataclasses.replace(opts, baudrate=9600)
    assert changed.baudrate == 9600
    assert opts.baudrate == 115200


def test_keyword_only():
    with pytest.raises(TypeError):
        CD48Options(9600)


@pytest.mark.parametrize(
    "field, value",
    [
        ("baudrate", 0),
        ("command_timeout", 0),
        ("read_poll_interval", -1),
        ("command_delay", -0.1),
        ("rate_limit", -1),
        ("command_retries", -1),
        ("reconnect_attempts", -2),
        ("channel_count", 0),
    ],
)
def test_invalid_options(field, value):
    with pytest.raises(ValidationError) as excinfo:
        CD48Options(**{field: value})
    assert excinfo.value.parameter == field


def test_dict_roundtrip():
    opts = CD48Options(baudrate=9600, auto_reconnect=True, rate_limit=0.2)
    assert CD48Options.from_dict(opts.to_dict()) == opts


def test_from_json_file(tmp_path):
    path = tmp_path / "cd48.json"
    path.write_text(json.dumps({"command_timeout": 2.5, "use_exclusive_lock": True}))
    opts = CD48Options.from_json_file(str(path))
    assert opts.command_timeout == 2.5
    assert opts.use_exclusive_lock
    # missing keys keep their defaults
    assert opts.baudrate == 115200


def test_from_json_file_invalid_value(tmp_path):
    path = tmp_path / "cd48.json"
    path.write_text(json.dumps({"command_retries": -1}))
    with pytest.raises(ValidationError):
        CD48Options.from_json_file(str(path))


def test_coincidence_options():
    opts = CoincidenceOptions()
    assert (opts.singles_a_channel, opts.singles_b_channel) == (0, 1)
    assert opts.coincidence_channel == 4
    assert opts.coincidence_window == 25e-9
    opts.validate(7)

    with pytest.raises(InvalidChannelError):
        CoincidenceOptions(singles_b_channel=8).validate(7)
    with pytest.raises(ValidationError):
        CoincidenceOptions(duration=0).validate(7)
    with pytest.raises(ValidationError):
        CoincidenceOptions(coincidence_window=-1e-9).validate(7)
    with pytest.raises(ValidationError):
        CoincidenceOptions(coincidence_window=math.inf).validate(7)
    # a smaller device narrows the valid range
    with pytest.raises(InvalidChannelError):
        CoincidenceOptions().validate(3)
