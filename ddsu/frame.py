"""Modbus RTU frame codec: read request construction, response parsing, CRC16

Request:   [slave][0x03][addr hi][addr lo][qty hi][qty lo][crc lo][crc hi]
Response:  [slave][func][byte count][data ...][crc lo][crc hi]
Exception: [slave][func | 0x80][code][crc lo][crc hi]
"""

import struct
from dataclasses import dataclass

from .errors import CRCMismatchError, FrameTooShortError, ModbusExceptionResponse

FUNCTION_READ_HOLDING_REGISTERS = 0x03
EXCEPTION_BIT = 0x80
MIN_RESPONSE_LENGTH = 5
CRC_POLYNOMIAL = 0xA001


@dataclass(frozen=True)
class Frame:
    """Parsed Modbus RTU frame."""
    slave_id: int
    function: int
    data: bytes
    crc: int

    @property
    def is_exception(self) -> bool:
        return bool(self.function & EXCEPTION_BIT)


def crc16(data: bytes) -> int:
    """Calculate the Modbus RTU CRC16 (init 0xFFFF, reflected poly 0xA001)."""
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ CRC_POLYNOMIAL
            else:
                crc >>= 1
    return crc


def append_crc(data: bytes) -> bytes:
    """Return data followed by its CRC16, low byte first."""
    return bytes(data) + struct.pack('<H', crc16(data))


def build_read_frame(slave_id: int, start_address: int, quantity: int) -> bytes:
    """Build an 8-byte read holding registers request.

    Args:
        slave_id: Modbus slave address (1 byte)
        start_address: First holding register address
        quantity: Number of 16-bit registers (protocol limit 125)

    Returns:
        Request frame including CRC
    """
    pdu = struct.pack('>BBHH', slave_id, FUNCTION_READ_HOLDING_REGISTERS,
                      start_address, quantity)
    return append_crc(pdu)


def expected_response_length(quantity: int) -> int:
    """Length of a normal response carrying `quantity` registers."""
    return 3 + quantity * 2 + 2


def parse_response(data: bytes) -> Frame:
    """Parse and validate a response frame.

    Raises:
        FrameTooShortError: fewer than 5 bytes, or fewer than the declared
            byte count requires
        CRCMismatchError: the trailing CRC does not match the content
        ModbusExceptionResponse: the device returned an exception; the
            exception carries the parsed frame
    """
    data = bytes(data)
    if len(data) < MIN_RESPONSE_LENGTH:
        raise FrameTooShortError(len(data), MIN_RESPONSE_LENGTH)

    slave_id = data[0]
    function = data[1]

    if function & EXCEPTION_BIT:
        received = struct.unpack('<H', data[3:5])[0]
        expected = crc16(data[:3])
        if received != expected:
            raise CRCMismatchError(received, expected)
        raise ModbusExceptionResponse(Frame(slave_id, function, data[2:3], received))

    byte_count = data[2]
    required = 3 + byte_count + 2
    if len(data) < required:
        raise FrameTooShortError(len(data), required)

    payload = data[3:3 + byte_count]
    received = struct.unpack('<H', data[3 + byte_count:required])[0]
    expected = crc16(data[:3 + byte_count])
    if received != expected:
        raise CRCMismatchError(received, expected)

    return Frame(slave_id, function, payload, received)
