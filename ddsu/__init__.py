"""
DDSU Modbus Monitor - Modbus RTU acquisition for DDSU energy meters

Polls a DDSU single-phase meter over a serial line, decodes its IEEE-754
registers and fans readings out to subscribers and, optionally, MQTT.
"""

__version__ = "1.0.0"

from .config import ConfigLoader, get_config, SerialConfig, PollingConfig, SerialConfigStore
from .logging_setup import setup_logging, get_logger
from .errors import (
    DDSUError,
    TransportError,
    FramingError,
    ModbusExceptionResponse,
    ConfigurationError,
    AlreadyRunningError,
)
from .registers import Reading
from .hub import Subscription, SubscriptionHub
from .poller import Poller
from .service import MeterService, DeviceStatus
from .transport import SerialTransport, list_available_ports
from .mqtt_publisher import MQTTPublisher

__all__ = [
    "__version__",
    "ConfigLoader",
    "get_config",
    "SerialConfig",
    "PollingConfig",
    "SerialConfigStore",
    "setup_logging",
    "get_logger",
    "DDSUError",
    "TransportError",
    "FramingError",
    "ModbusExceptionResponse",
    "ConfigurationError",
    "AlreadyRunningError",
    "Reading",
    "Subscription",
    "SubscriptionHub",
    "Poller",
    "MeterService",
    "DeviceStatus",
    "SerialTransport",
    "list_available_ports",
    "MQTTPublisher",
]
