"""Exception hierarchy for the DDSU Modbus monitor"""

from typing import Optional


class DDSUError(Exception):
    """Base exception for the DDSU Modbus monitor."""


class TransportError(DDSUError):
    """Serial link failure: port not open, open/write failure, no response."""

    def __init__(self, message: str, *, port: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        self.port = port
        self.cause = cause
        super().__init__(message)


class FramingError(DDSUError):
    """Response bytes do not form a valid Modbus RTU frame."""


class FrameTooShortError(FramingError):
    """Response is shorter than its header or declared byte count requires."""

    def __init__(self, length: int, required: int):
        self.length = length
        self.required = required
        super().__init__(f"Frame too short: {length} bytes, need {required}")


class CRCMismatchError(FramingError):
    """CRC carried by the frame differs from the recomputed CRC."""

    def __init__(self, received: int, expected: int):
        self.received = received
        self.expected = expected
        super().__init__(
            f"CRC mismatch: received 0x{received:04X}, expected 0x{expected:04X}"
        )


class ModbusExceptionResponse(DDSUError):
    """Device answered with an exception response (function code | 0x80).

    The parsed frame is kept on ``frame`` for diagnostics.
    """

    NAMES = {
        0x01: "ILLEGAL_FUNCTION",
        0x02: "ILLEGAL_DATA_ADDRESS",
        0x03: "ILLEGAL_DATA_VALUE",
        0x04: "SLAVE_DEVICE_FAILURE",
        0x05: "ACKNOWLEDGE",
        0x06: "SLAVE_DEVICE_BUSY",
        0x08: "MEMORY_PARITY_ERROR",
        0x0A: "GATEWAY_PATH_UNAVAILABLE",
        0x0B: "GATEWAY_TARGET_FAILED_TO_RESPOND",
    }

    def __init__(self, frame):
        self.frame = frame
        self.code = frame.data[0] if frame.data else 0
        self.name = self.NAMES.get(self.code, "UNKNOWN")
        super().__init__(f"Modbus exception response: {self.code:02X} ({self.name})")


class ConfigurationError(DDSUError):
    """Serial configuration cannot be used to start acquisition."""


class AlreadyRunningError(DDSUError):
    """Poller.start() called while the poller is running."""

    def __init__(self, message: str = "Polling is already running"):
        super().__init__(message)


class ProtocolDetectionError(DDSUError):
    """No supported protocol answered the probe."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)
