import pytest

from cd48.device.mock import MockSerialDevice, MockSerialHost
from cd48.types import CD48Options

# no boot wait or settle delay, short deadlines
FAST_OPTIONS = dict(
    command_delay=0.0,
    connection_init_delay=0.0,
    command_timeout=0.2,
    read_poll_interval=0.02,
    retry_delay=0.01,
    reconnect_delay=0.01,
)


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "slow: marks test as slow running test")
    config.addinivalue_line(
        "markers", "hardware: marks test that require physical hardware"
    )


def fast_options(**overrides) -> CD48Options:
    return CD48Options(**{**FAST_OPTIONS, **overrides})


@pytest.fixture
def mock_device() -> MockSerialDevice:
    return MockSerialDevice(seed=0)


@pytest.fixture
def mock_host(mock_device) -> MockSerialHost:
    return MockSerialHost([mock_device])
