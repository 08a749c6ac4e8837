"""Half-duplex serial transport for Modbus RTU

A single wire cannot carry concurrent writers or readers, so every
primitive holds the transport lock. One logical register read is a
write followed by several reads; the poller serializes those sequences
with its own communication lock on top of this one.
"""

import threading
from abc import ABC, abstractmethod
from typing import List, Optional

import serial
from serial.tools import list_ports

from .config import SerialConfig
from .errors import TransportError
from .logging_setup import get_logger

BYTESIZES = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}

STOPBITS = {
    1: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2: serial.STOPBITS_TWO,
}

PARITIES = {
    'N': serial.PARITY_NONE,
    'E': serial.PARITY_EVEN,
    'O': serial.PARITY_ODD,
    'M': serial.PARITY_MARK,
    'S': serial.PARITY_SPACE,
}


class Transport(ABC):
    """Byte channel used by the poller."""

    @abstractmethod
    def open(self):
        """Open the channel. Raises TransportError."""

    @abstractmethod
    def close(self):
        """Close the channel; no-op when already closed."""

    @abstractmethod
    def write(self, data: bytes) -> int:
        """Write all bytes, returning the count written."""

    @abstractmethod
    def read_with_timeout(self, size: int, timeout: float) -> bytes:
        """Read up to `size` bytes, waiting at most `timeout` seconds.

        Returns b"" when nothing arrived before the timeout.
        """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


def _describe_open_error(port: str, error: Exception) -> str:
    """Turn a pyserial open failure into an actionable message."""
    text = str(error)
    lowered = text.lower()
    if 'no such file' in lowered or 'not found' in lowered or 'cannot find' in lowered:
        return f"Serial port {port} does not exist, check the device connection"
    if 'busy' in lowered or 'access is denied' in lowered or 'permission denied' in lowered:
        return f"Serial port {port} is in use or not accessible, close other programs and retry"
    return f"Failed to open serial port {port}: {text}"


class SerialTransport(Transport):
    """pyserial-backed RS-485 link with thread-safe access."""

    def __init__(self, config: SerialConfig):
        self.config = config
        self.log = get_logger()
        self._serial: Optional[serial.Serial] = None
        self._lock = threading.Lock()

    @property
    def port(self) -> str:
        return self.config.port

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._serial is not None and self._serial.is_open

    def open(self):
        with self._lock:
            if self._serial is not None and self._serial.is_open:
                raise TransportError(f"Serial port {self.port} is already open", port=self.port)

            try:
                self._serial = serial.Serial(
                    port=self.config.port,
                    baudrate=self.config.baud_rate,
                    bytesize=BYTESIZES[self.config.data_bits],
                    parity=PARITIES[self.config.parity],
                    stopbits=STOPBITS[self.config.stop_bits],
                    timeout=0,
                    write_timeout=1.0
                )
            except (serial.SerialException, OSError, ValueError) as e:
                self._serial = None
                raise TransportError(_describe_open_error(self.port, e), port=self.port, cause=e) from e

            self.log.info(f"Serial port opened: {self.config.describe()}")

    def close(self):
        with self._lock:
            if self._serial is None:
                return
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as e:
                self.log.warning(f"Error closing serial port {self.port}: {e}")
            finally:
                self._serial = None
            self.log.info(f"Serial port {self.port} closed")

    def _require_open(self) -> serial.Serial:
        if self._serial is None or not self._serial.is_open:
            raise TransportError("Serial port not open", port=self.port)
        return self._serial

    def write(self, data: bytes) -> int:
        with self._lock:
            ser = self._require_open()
            try:
                written = ser.write(data)
                ser.flush()
            except (serial.SerialException, OSError) as e:
                raise TransportError(f"Write failed: {e}", port=self.port, cause=e) from e
            return written if written is not None else len(data)

    def read_with_timeout(self, size: int, timeout: float) -> bytes:
        with self._lock:
            ser = self._require_open()
            try:
                # Block for the first byte only, then take what is buffered
                if ser.timeout != timeout:
                    ser.timeout = timeout
                data = ser.read(1)
                if data and size > 1:
                    waiting = min(ser.in_waiting, size - 1)
                    if waiting:
                        data += ser.read(waiting)
                return bytes(data)
            except (serial.SerialException, OSError) as e:
                raise TransportError(f"Read failed: {e}", port=self.port, cause=e) from e


def list_available_ports() -> List[str]:
    """Device names of the serial ports present on this machine."""
    return sorted(p.device for p in list_ports.comports())
