"""Protocol probe: checks that the slave answers Modbus RTU requests"""

from .errors import DDSUError, ProtocolDetectionError, TransportError
from .frame import build_read_frame, parse_response
from .logging_setup import get_logger
from .registers import RegisterAddress
from .transport import Transport

PROTOCOL_MODBUS_RTU = "Modbus RTU"
PROTOCOL_UNKNOWN = "Unknown"

PROBE_ADDRESS = RegisterAddress.VOLTAGE
PROBE_QUANTITY = 2


def probe_modbus(transport: Transport, slave_id: int, timeout: float = 0.2):
    """Send a 2-register read of the voltage register and validate the answer.

    Raises:
        TransportError: port closed, write failure or no answer within timeout
        FramingError: the answer is not a valid RTU frame
        ModbusExceptionResponse: the slave rejected the request
    """
    if not transport.is_open:
        raise TransportError("Serial port not open")

    transport.write(build_read_frame(slave_id, PROBE_ADDRESS, PROBE_QUANTITY))

    response = transport.read_with_timeout(256, timeout)
    if not response:
        raise TransportError(f"No answer from slave 0x{slave_id:02X} within {timeout}s")

    parse_response(response)


def detect_protocol(transport: Transport, slave_id: int, timeout: float = 0.2) -> str:
    """Identify the protocol spoken by the slave.

    Returns:
        Protocol label

    Raises:
        ProtocolDetectionError: no supported protocol answered
    """
    log = get_logger()
    try:
        probe_modbus(transport, slave_id, timeout)
    except DDSUError as e:
        raise ProtocolDetectionError(f"No supported protocol detected: {e}", cause=e) from e

    log.info(f"Slave 0x{slave_id:02X} answers {PROTOCOL_MODBUS_RTU}")
    return PROTOCOL_MODBUS_RTU
