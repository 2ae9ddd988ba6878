# -*- coding: utf-8 -*-

# Serial link
DEFAULT_BAUDRATE = 115200
DEFAULT_VENDOR_ID = 0x04B4  # Cypress Semiconductor (CD48 USB bridge)
LINE_TERMINATOR = "\r"
RESPONSE_TERMINATORS = ("\r", "\n")
READ_CHUNK_SIZE = 256

# Timing (all seconds)
DEFAULT_COMMAND_DELAY = 0.05  # settle time after each write
DEFAULT_TIMEOUT = 1.0  # command round-trip deadline, from write completion
DEFAULT_READ_POLL_INTERVAL = 0.1
DEFAULT_CONNECTION_INIT_DELAY = 0.5  # firmware boot after open
DEFAULT_RATE_LIMIT = 0.0
DEFAULT_RETRIES = 3  # Number of extra attempts for a failed command
DEFAULT_RETRY_DELAY = 0.1
DEFAULT_RECONNECT_ATTEMPTS = 3
DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_UNPLUG_POLL_INTERVAL = 1.0

EXCLUSIVE_LOCK_NAME = "cd48-serial"

# Hardware
CHANNEL_COUNT = 8
CHANNEL_MIN = 0
CHANNEL_MAX = CHANNEL_COUNT - 1
VOLTAGE_MIN = 0.0
VOLTAGE_MAX = 4.08
BYTE_MIN = 0
BYTE_MAX = 255
REPEAT_INTERVAL_MIN = 100  # ms
REPEAT_INTERVAL_MAX = 65535  # ms
IMPEDANCE_MODES = ("50ohm", "highz")

MIN_FIRMWARE_VERSION = (1, 0, 0)

# Measurement
COINCIDENCE_WINDOW = 25e-9  # seconds
ACCIDENTAL_RATE_MULTIPLIER = 2
DEFAULT_SINGLES_A_CHANNEL = 0
DEFAULT_SINGLES_B_CHANNEL = 1
DEFAULT_COINCIDENCE_CHANNEL = 4
DEFAULT_MEASUREMENT_DURATION = 1.0  # seconds

# Logging
DEFAULT_LOGLEVEL = "INFO"
TEST_LOGLEVEL = "TRACE"
SINGLE_LINE_ERR_LOG = False  # reformat tracebacks into a single line
