from .mock_host import (
    DEFAULT_RESPONSES,
    MockSerialChannel,
    MockSerialDevice,
    MockSerialHost,
    MockStreamReader,
    MockStreamWriter,
)
