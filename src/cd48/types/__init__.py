"""
Options, results, errors and host protocols for the cd48 package.

1. Configuration (config.py)
    - `CD48Options`: immutable engine configuration
    - `CoincidenceOptions`: parameters of a coincidence measurement

2. Results (measurements.py)
    - `CountData`, `RateMeasurement`, `CoincidenceMeasurement`, `FirmwareInfo`

3. Errors (errors.py)
    - `CD48Error` and its subclasses

4. Host protocols (protocols.py)
    - `SerialHost`, `SerialDevice`, `SerialChannel`
"""

from .config import CD48Options, CoincidenceOptions
from .errors import (
    CD48Error,
    CommandTimeoutError,
    CommunicationError,
    ConnectionFailedError,
    DeviceSelectionCancelledError,
    FirmwareIncompatibleError,
    InvalidChannelError,
    InvalidResponseError,
    InvalidVoltageError,
    NotConnectedError,
    OperationAbortedError,
    UnsupportedCapabilityError,
    ValidationError,
)
from .measurements import (
    CoincidenceMeasurement,
    CoincidenceUncertainty,
    CountData,
    FirmwareInfo,
    RateMeasurement,
    RateUncertainty,
)
from .protocols import SerialChannel, SerialDevice, SerialHost
