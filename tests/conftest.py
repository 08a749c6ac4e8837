"""Shared fixtures: scripted meter on a fake serial line."""

import struct
import threading
from typing import Callable, List, Optional

import pytest

from ddsu.config import PollingConfig, SerialConfig
from ddsu.errors import TransportError
from ddsu.frame import append_crc
from ddsu.registers import ELECTRICAL_BLOCK_START, RegisterAddress
from ddsu.transport import Transport


def make_response(slave_id: int, payload: bytes, function: int = 0x03) -> bytes:
    """Normal read response with CRC."""
    return append_crc(bytes([slave_id, function, len(payload)]) + payload)


def make_exception(slave_id: int, code: int, function: int = 0x03) -> bytes:
    return append_crc(bytes([slave_id, function | 0x80, code]))


def electrical_payload(voltage=0.0, current=0.0, active_power=0.0, reactive_power=0.0,
                       apparent_power=0.0, power_factor=0.0, frequency=0.0) -> bytes:
    """32 bytes for registers 0x2000-0x200F, big-endian float32 per quantity."""
    data = bytearray(32)
    for address, value in (
        (RegisterAddress.VOLTAGE, voltage),
        (RegisterAddress.CURRENT, current),
        (RegisterAddress.ACTIVE_POWER, active_power),
        (RegisterAddress.REACTIVE_POWER, reactive_power),
        (RegisterAddress.APPARENT_POWER, apparent_power),
        (RegisterAddress.POWER_FACTOR, power_factor),
        (RegisterAddress.FREQUENCY, frequency),
    ):
        offset = (address - ELECTRICAL_BLOCK_START) * 2
        data[offset:offset + 4] = struct.pack('>f', value)
    return bytes(data)


class MeterSimulator:
    """Answers read requests like a DDSU meter.

    silent: never answer
    electrical_failures: number of upcoming electrical requests left unanswered
    energy_silent: never answer the energy block
    exception_code: answer every request with this exception code
    """

    def __init__(self, slave_id: int = 1, voltage=220.5, current=1.25, active_power=275.0,
                 reactive_power=12.0, apparent_power=276.0, power_factor=0.996,
                 frequency=50.0, energy=1234.5):
        self.slave_id = slave_id
        self.values = dict(voltage=voltage, current=current, active_power=active_power,
                           reactive_power=reactive_power, apparent_power=apparent_power,
                           power_factor=power_factor, frequency=frequency)
        self.energy = energy
        self.silent = False
        self.electrical_failures = 0
        self.energy_silent = False
        self.exception_code: Optional[int] = None

    def __call__(self, request: bytes) -> Optional[bytes]:
        slave_id, _function, address, _quantity = struct.unpack('>BBHH', request[:6])
        if self.silent or slave_id != self.slave_id:
            return None
        if self.exception_code is not None:
            return make_exception(slave_id, self.exception_code)
        if address == RegisterAddress.ACTIVE_ENERGY:
            if self.energy_silent:
                return None
            return make_response(slave_id, struct.pack('>f', self.energy))
        if self.electrical_failures:
            self.electrical_failures -= 1
            return None
        return make_response(slave_id, electrical_payload(**self.values))


class FakeTransport(Transport):
    """In-memory serial line. Each write queues the responder's answer.

    chunk_size splits answers across several reads like a slow line.
    """

    def __init__(self, responder: Callable[[bytes], Optional[bytes]] = None,
                 chunk_size: int = None):
        self.responder = responder
        self.chunk_size = chunk_size
        self.requests: List[bytes] = []
        self.open_error: Optional[Exception] = None
        self.open_count = 0
        self._pending = b""
        self._open = False
        self._lock = threading.Lock()

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self._open = True
        self.open_count += 1

    def close(self):
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def write(self, data: bytes) -> int:
        if not self._open:
            raise TransportError("Serial port not open")
        with self._lock:
            self.requests.append(bytes(data))
            answer = self.responder(bytes(data)) if self.responder else None
            self._pending += answer or b""
        return len(data)

    def read_with_timeout(self, size: int, timeout: float) -> bytes:
        if not self._open:
            raise TransportError("Serial port not open")
        with self._lock:
            limit = min(size, self.chunk_size or size)
            chunk, self._pending = self._pending[:limit], self._pending[limit:]
        return chunk

    def feed(self, data: bytes):
        """Put unsolicited bytes on the line."""
        with self._lock:
            self._pending += data

    def addresses(self) -> List[int]:
        return [struct.unpack('>H', r[2:4])[0] for r in self.requests]


@pytest.fixture
def fast_polling() -> PollingConfig:
    return PollingConfig(
        poll_interval=0.01,
        retry_delay=0.001,
        settle_delay=0,
        segment_timeout=0.01,
        segment_pause=0,
        flush_timeout=0.001,
    )


@pytest.fixture
def meter() -> MeterSimulator:
    return MeterSimulator(slave_id=1)


@pytest.fixture
def transport(meter: MeterSimulator) -> FakeTransport:
    t = FakeTransport(meter)
    t.open()
    return t


@pytest.fixture
def serial_config() -> SerialConfig:
    return SerialConfig(port="/dev/ttyUSB0", slave_id=1)
