"""DDSU register map, float decoding, reading filter and integrity check

Each quantity occupies two holding registers carrying an IEEE-754 float32.
Registers 0x2000-0x200F are read as one 16-register block (0x200C is
reserved); cumulative active energy is a separate 2-register block at 0x4000.
"""

import math
import struct
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import IntEnum
from typing import Dict, List, Optional


class RegisterAddress(IntEnum):
    """Base holding register address of each quantity."""
    VOLTAGE = 0x2000
    CURRENT = 0x2002
    ACTIVE_POWER = 0x2004
    REACTIVE_POWER = 0x2006
    APPARENT_POWER = 0x2008
    POWER_FACTOR = 0x200A
    FREQUENCY = 0x200E
    ACTIVE_ENERGY = 0x4000


ELECTRICAL_BLOCK_START = RegisterAddress.VOLTAGE
ELECTRICAL_BLOCK_QUANTITY = 16
ENERGY_BLOCK_START = RegisterAddress.ACTIVE_ENERGY
ENERGY_BLOCK_QUANTITY = 2

ELECTRICAL_ADDRESSES = tuple(a for a in RegisterAddress if a != RegisterAddress.ACTIVE_ENERGY)

# Reading field for each register
FIELD_NAMES = {
    RegisterAddress.VOLTAGE: 'voltage',
    RegisterAddress.CURRENT: 'current',
    RegisterAddress.ACTIVE_POWER: 'active_power',
    RegisterAddress.REACTIVE_POWER: 'reactive_power',
    RegisterAddress.APPARENT_POWER: 'apparent_power',
    RegisterAddress.POWER_FACTOR: 'power_factor',
    RegisterAddress.FREQUENCY: 'frequency',
    RegisterAddress.ACTIVE_ENERGY: 'active_energy',
}


@dataclass(frozen=True)
class DataPoint:
    """Display metadata for one quantity."""
    name: str
    address: RegisterAddress
    unit: str


DATA_POINTS: List[DataPoint] = [
    DataPoint("Voltage", RegisterAddress.VOLTAGE, "V"),
    DataPoint("Current", RegisterAddress.CURRENT, "A"),
    DataPoint("Active Power", RegisterAddress.ACTIVE_POWER, "W"),
    DataPoint("Reactive Power", RegisterAddress.REACTIVE_POWER, "var"),
    DataPoint("Apparent Power", RegisterAddress.APPARENT_POWER, "VA"),
    DataPoint("Power Factor", RegisterAddress.POWER_FACTOR, ""),
    DataPoint("Frequency", RegisterAddress.FREQUENCY, "Hz"),
    DataPoint("Active Energy", RegisterAddress.ACTIVE_ENERGY, "kWh"),
]


@dataclass(frozen=True)
class Reading:
    """One accepted set of measurements from the meter."""
    voltage: float = 0.0         # V
    current: float = 0.0         # A
    active_power: float = 0.0    # W
    reactive_power: float = 0.0  # var
    apparent_power: float = 0.0  # VA
    power_factor: float = 0.0
    frequency: float = 0.0       # Hz
    active_energy: float = 0.0   # kWh
    timestamp: datetime = field(default_factory=datetime.now)

    def values(self) -> Dict[str, float]:
        """Measurement fields without the timestamp."""
        return {name: getattr(self, name) for name in FIELD_NAMES.values()}

    def to_dict(self) -> dict:
        data = self.values()
        data['timestamp'] = self.timestamp.isoformat()
        return data


class RegisterBlock:
    """Raw 4-byte values of one acquisition, one fixed slot per quantity."""

    __slots__ = ('_slots',)

    _INDEX = {address: i for i, address in enumerate(RegisterAddress)}

    def __init__(self):
        self._slots: List[Optional[bytes]] = [None] * len(RegisterAddress)

    def set(self, address: RegisterAddress, raw: bytes):
        self._slots[self._INDEX[address]] = bytes(raw[:4])

    def get(self, address: RegisterAddress) -> Optional[bytes]:
        return self._slots[self._INDEX[address]]

    def __contains__(self, address) -> bool:
        return self.get(address) is not None

    def set_electrical(self, data: bytes):
        """Split a 32-byte read of 0x2000-0x200F into its quantities."""
        for address in ELECTRICAL_ADDRESSES:
            offset = (address - ELECTRICAL_BLOCK_START) * 2
            self.set(address, data[offset:offset + 4])

    def set_energy(self, data: bytes):
        self.set(RegisterAddress.ACTIVE_ENERGY, data[:4])


def parse_float32(raw: bytes, byte_order: str = "big") -> float:
    """Reconstruct the float32 carried by two consecutive registers.

    Args:
        raw: 4 bytes as received, first register first
        byte_order: 'big' reads the bytes as a big-endian float
            (43 5C 80 00 -> 220.5); 'swapped' exchanges the two bytes of
            each register ([r0.lo, r0.hi, r1.lo, r1.hi]) and reads the
            result little-endian

    Returns:
        Decoded value, 0.0 if fewer than 4 bytes are given
    """
    if len(raw) < 4:
        return 0.0
    if byte_order == "swapped":
        shuffled = bytes((raw[1], raw[0], raw[3], raw[2]))
        return struct.unpack('<f', shuffled)[0]
    return struct.unpack('>f', bytes(raw[:4]))[0]


def is_valid(value: float) -> bool:
    """False for NaN and +/-Infinity."""
    return not (math.isnan(value) or math.isinf(value))


def decode(block: RegisterBlock, timestamp: datetime = None,
           byte_order: str = "big") -> Reading:
    """Decode every present register; absent ones stay 0.0."""
    values = {}
    for address, name in FIELD_NAMES.items():
        raw = block.get(address)
        if raw is not None:
            values[name] = parse_float32(raw, byte_order)
    return Reading(timestamp=timestamp or datetime.now(), **values)


def filter_reading(reading: Reading, sentinel: float = -1000.0) -> Reading:
    """Clamp non-finite values and values below the sentinel to 0.0.

    Only the offending field is zeroed; the reading itself is kept.
    """
    clamped = {}
    for f in fields(Reading):
        if f.name == 'timestamp':
            continue
        value = getattr(reading, f.name)
        if not is_valid(value) or value < sentinel:
            clamped[f.name] = 0.0
    if not clamped:
        return reading
    return replace(reading, **clamped)


def has_integrity(reading: Optional[Reading]) -> bool:
    """Decide whether a decoded reading reflects a live device.

    An all-zero reading is treated as a transient non-response rather
    than a genuine zero-power state.
    """
    if reading is None:
        return False

    valid = reading.voltage > 0 or reading.frequency > 0

    # Load present without voltage/frequency still means the meter answered
    if reading.current > 0 or reading.active_power > 0:
        valid = True

    # Standby: only the energy counter is meaningful
    if reading.active_energy > 0:
        valid = True

    return valid
