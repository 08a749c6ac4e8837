"""YAML Configuration loader for the DDSU Modbus monitor

Supports configuration via:
1. YAML config file (optional)
2. Environment variables (override YAML values)

Environment variable mapping:
  SERIAL_PORT, SERIAL_BAUD_RATE, SERIAL_DATA_BITS, SERIAL_STOP_BITS
  SERIAL_PARITY, SLAVE_ID
  POLL_INTERVAL, FULL_READ_EVERY, RETRY_ATTEMPTS, RETRY_DELAY, SETTLE_DELAY
  SEGMENT_TIMEOUT, FAILURES_BEFORE_OFFLINE, BYTE_ORDER, PROBE_ON_START
  MQTT_ENABLED, MQTT_BROKER, MQTT_PORT, MQTT_USERNAME, MQTT_PASSWORD
  MQTT_PREFIX, MQTT_RETAIN, MQTT_QOS, PUBLISH_MODE
  LOG_LEVEL, LOG_FILE, HEALTH_FILE, SNAPSHOT_FILE
"""

import json
import os
import yaml
from typing import Dict, Optional, Any
from dataclasses import dataclass

from .errors import ConfigurationError

VALID_DATA_BITS = (5, 6, 7, 8)
VALID_STOP_BITS = (1, 1.5, 2)
VALID_PARITIES = ('N', 'E', 'O', 'M', 'S')
MAX_SLAVE_ID = 247

# Integer codes used by the saved snapshot file
STOP_BITS_CODES = {1: 0, 1.5: 1, 2: 2}
PARITY_CODES = {'N': 0, 'O': 1, 'E': 2, 'M': 3, 'S': 4}


def _env_get(key: str, default: Any = None, type_cast: type = str) -> Any:
    """Get environment variable with type casting.

    Args:
        key: Environment variable name
        default: Default value if not set
        type_cast: Type to cast the value to (str, int, float, bool)

    Returns:
        The environment variable value cast to the specified type, or default
    """
    value = os.environ.get(key)
    if value is None:
        return default

    if type_cast == bool:
        return value.lower() in ('true', '1', 'yes', 'on')
    elif type_cast == int:
        try:
            return int(value, 0)
        except ValueError:
            return default
    elif type_cast == float:
        try:
            return float(value)
        except ValueError:
            return default
    return value


def _stop_bits(value: Any) -> float:
    """Normalize 1 / 1.5 / 2 from YAML, env or snapshot input."""
    value = float(value)
    return int(value) if value.is_integer() else value


@dataclass(frozen=True)
class SerialConfig:
    """Serial link and slave address. Immutable snapshot."""
    port: str = ""
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: float = 1
    parity: str = 'N'
    slave_id: int = 0  # 0 = not configured

    def validate(self):
        """Raise ConfigurationError if acquisition cannot start with this config."""
        if not self.port:
            raise ConfigurationError("No serial port selected")
        if not 1 <= self.slave_id <= MAX_SLAVE_ID:
            raise ConfigurationError(
                f"Invalid slave address {self.slave_id} (expected 1-{MAX_SLAVE_ID})"
            )
        if self.baud_rate <= 0:
            raise ConfigurationError(f"Invalid baud rate {self.baud_rate}")
        if self.data_bits not in VALID_DATA_BITS:
            raise ConfigurationError(f"Invalid data bits {self.data_bits}")
        if self.stop_bits not in VALID_STOP_BITS:
            raise ConfigurationError(f"Invalid stop bits {self.stop_bits}")
        if self.parity not in VALID_PARITIES:
            raise ConfigurationError(f"Invalid parity {self.parity!r}")

    def describe(self) -> str:
        return (f"{self.port} {self.baud_rate} {self.data_bits}{self.parity}{self.stop_bits}, "
                f"slave 0x{self.slave_id:02X}")


@dataclass(frozen=True)
class PollingConfig:
    """Acquisition timing and retry policy"""
    poll_interval: float = 1.0         # Seconds between cycles
    full_read_every: int = 10          # Every Nth cycle also reads the energy block
    retry_attempts: int = 3            # Attempts per register block
    retry_delay: float = 0.1           # Backoff = (attempt + 1) * retry_delay
    settle_delay: float = 0.2          # Wait after writing a request
    segment_timeout: float = 0.5       # Timeout of each response read
    max_segments: int = 10             # Response reads per request
    segment_pause: float = 0.05        # Pause between partial segments
    flush_attempts: int = 5            # Stale byte discard reads
    flush_timeout: float = 0.01
    failures_before_offline: int = 3   # Failed cycles before status goes offline
    value_sentinel: float = -1000.0    # Values below are clamped to 0
    byte_order: str = "big"            # 'big' or 'swapped', see registers.parse_float32
    probe_on_start: bool = False
    subscriber_capacity: int = 10


@dataclass
class MQTTConfig:
    """MQTT broker settings"""
    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    topic_prefix: str = "ddsu"
    retain: bool = True
    qos: int = 0
    publish_mode: str = "changed"  # 'changed' or 'all'


@dataclass
class GeneralConfig:
    """General application settings"""
    log_level: str = "INFO"
    log_file: str = ""
    health_file: str = "/tmp/ddsu_health"
    snapshot_file: str = "data/saved_serial_config.json"


class ConfigLoader:
    """YAML configuration loader with environment variable override support"""

    _instance: Optional['ConfigLoader'] = None

    def __init__(self, config_path: str = None):
        self.config: Dict = {}
        self.config_file: Optional[str] = None
        self.general: GeneralConfig = None
        self.serial: SerialConfig = None
        self.polling: PollingConfig = None
        self.mqtt: MQTTConfig = None
        self._load_config(config_path)

    @classmethod
    def get_instance(cls, config_path: str = None) -> 'ConfigLoader':
        """Get singleton instance"""
        if cls._instance is None:
            cls._instance = ConfigLoader(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton (useful for testing)"""
        cls._instance = None

    def _load_config(self, config_path: str = None):
        """Load and parse configuration from YAML file and environment variables"""
        if config_path and not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        paths = [
            config_path,
            os.environ.get('DDSU_CONFIG'),
            '/app/config/ddsu_modbus_monitor.yaml',
            'config/ddsu_modbus_monitor.yaml',
            'ddsu_modbus_monitor.yaml'
        ]

        # Without a file everything comes from defaults and env vars; the
        # port and slave address may still be filled from the saved snapshot.
        for path in filter(None, paths):
            if os.path.exists(path):
                with open(path, 'r') as f:
                    self.config = yaml.safe_load(f) or {}
                self.config_file = path
                break

        self._parse_config()

    def _parse_config(self):
        """Parse configuration into dataclasses with environment variable overrides"""

        gen = self.config.get('general', {})
        self.general = GeneralConfig(
            log_level=_env_get('LOG_LEVEL', gen.get('log_level', 'INFO')),
            log_file=_env_get('LOG_FILE', gen.get('log_file', '')),
            health_file=_env_get('HEALTH_FILE', gen.get('health_file', '/tmp/ddsu_health')),
            snapshot_file=_env_get('SNAPSHOT_FILE', gen.get('snapshot_file', 'data/saved_serial_config.json'))
        )

        ser = self.config.get('serial', {})
        self.serial = SerialConfig(
            port=_env_get('SERIAL_PORT', ser.get('port', '')),
            baud_rate=_env_get('SERIAL_BAUD_RATE', ser.get('baud_rate', 9600), int),
            data_bits=_env_get('SERIAL_DATA_BITS', ser.get('data_bits', 8), int),
            stop_bits=_stop_bits(_env_get('SERIAL_STOP_BITS', ser.get('stop_bits', 1), float)),
            parity=str(_env_get('SERIAL_PARITY', ser.get('parity', 'N'))).upper()[:1],
            slave_id=_env_get('SLAVE_ID', ser.get('slave_id', 0), int)
        )

        pol = self.config.get('polling', {})
        self.polling = PollingConfig(
            poll_interval=_env_get('POLL_INTERVAL', pol.get('poll_interval', 1.0), float),
            full_read_every=_env_get('FULL_READ_EVERY', pol.get('full_read_every', 10), int),
            retry_attempts=_env_get('RETRY_ATTEMPTS', pol.get('retry_attempts', 3), int),
            retry_delay=_env_get('RETRY_DELAY', pol.get('retry_delay', 0.1), float),
            settle_delay=_env_get('SETTLE_DELAY', pol.get('settle_delay', 0.2), float),
            segment_timeout=_env_get('SEGMENT_TIMEOUT', pol.get('segment_timeout', 0.5), float),
            max_segments=pol.get('max_segments', 10),
            segment_pause=pol.get('segment_pause', 0.05),
            flush_attempts=pol.get('flush_attempts', 5),
            flush_timeout=pol.get('flush_timeout', 0.01),
            failures_before_offline=_env_get('FAILURES_BEFORE_OFFLINE', pol.get('failures_before_offline', 3), int),
            value_sentinel=pol.get('value_sentinel', -1000.0),
            byte_order=_env_get('BYTE_ORDER', pol.get('byte_order', 'big')),
            probe_on_start=_env_get('PROBE_ON_START', pol.get('probe_on_start', False), bool),
            subscriber_capacity=pol.get('subscriber_capacity', 10)
        )
        if self.polling.byte_order not in ('big', 'swapped'):
            raise ValueError(f"polling.byte_order must be 'big' or 'swapped', got {self.polling.byte_order!r}")
        if self.polling.full_read_every < 1:
            raise ValueError("polling.full_read_every must be >= 1")

        mq = self.config.get('mqtt', {})
        self.mqtt = MQTTConfig(
            enabled=_env_get('MQTT_ENABLED', mq.get('enabled', False), bool),
            broker=_env_get('MQTT_BROKER', mq.get('broker', 'localhost')),
            port=_env_get('MQTT_PORT', mq.get('port', 1883), int),
            username=_env_get('MQTT_USERNAME', mq.get('username', '')),
            password=_env_get('MQTT_PASSWORD', mq.get('password', '')),
            topic_prefix=_env_get('MQTT_PREFIX', mq.get('topic_prefix', 'ddsu')),
            retain=_env_get('MQTT_RETAIN', mq.get('retain', True), bool),
            qos=_env_get('MQTT_QOS', mq.get('qos', 0), int),
            publish_mode=_env_get('PUBLISH_MODE', mq.get('publish_mode', 'changed'))
        )


def get_config(config_path: str = None) -> ConfigLoader:
    """Get configuration singleton"""
    return ConfigLoader.get_instance(config_path)


class SerialConfigStore:
    """Saved serial configuration snapshot (JSON file).

    File shape: {"port", "baudRate", "dataBits", "stopBits", "parity", "slaveID"}
    with stopBits and parity stored as integer codes.
    """

    def __init__(self, path: str = "data/saved_serial_config.json"):
        self.path = path

    def save(self, config: SerialConfig):
        """Write the snapshot, creating the parent directory if needed."""
        if config.stop_bits not in STOP_BITS_CODES:
            raise ConfigurationError(f"Invalid stop bits {config.stop_bits}")
        if config.parity not in PARITY_CODES:
            raise ConfigurationError(f"Invalid parity {config.parity!r}")

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        persist = {
            'port': config.port,
            'baudRate': config.baud_rate,
            'dataBits': config.data_bits,
            'stopBits': STOP_BITS_CODES[config.stop_bits],
            'parity': PARITY_CODES[config.parity],
            'slaveID': config.slave_id,
        }
        with open(self.path, 'w') as f:
            json.dump(persist, f, indent=2)

    def load(self) -> Optional[SerialConfig]:
        """Read the snapshot. Returns None when no snapshot was saved."""
        try:
            with open(self.path, 'r') as f:
                persist = json.load(f)
        except FileNotFoundError:
            return None
        except ValueError as e:
            raise ConfigurationError(f"Invalid saved serial config {self.path}: {e}") from e

        stop_bits = {code: bits for bits, code in STOP_BITS_CODES.items()}
        parity = {code: name for name, code in PARITY_CODES.items()}
        try:
            return SerialConfig(
                port=persist.get('port', ''),
                baud_rate=int(persist.get('baudRate', 9600)),
                data_bits=int(persist.get('dataBits', 8)),
                stop_bits=stop_bits[int(persist.get('stopBits', 0))],
                parity=parity[int(persist.get('parity', 0))],
                slave_id=int(persist.get('slaveID', 0)),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid saved serial config {self.path}: {e}") from e

    def clear(self):
        """Delete the snapshot if present."""
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
