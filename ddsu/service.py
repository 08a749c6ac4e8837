"""Meter service: owns configuration, transport, poller, status and hubs

Collaborators (entry point, MQTT bridge, a GUI) only use the control
surface of MeterService: start/stop, get_current_reading, get_status,
subscribe/unsubscribe and update_config.
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .config import PollingConfig, SerialConfig
from .detector import PROTOCOL_MODBUS_RTU, PROTOCOL_UNKNOWN, detect_protocol
from .errors import ConfigurationError, DDSUError, ProtocolDetectionError, TransportError
from .hub import Subscription, SubscriptionHub
from .logging_setup import get_logger
from .poller import Poller
from .registers import Reading
from .transport import SerialTransport, Transport, list_available_ports


@dataclass(frozen=True)
class DeviceStatus:
    """Link and device state as seen by collaborators."""
    connected: bool = False
    protocol: str = PROTOCOL_MODBUS_RTU
    last_update: datetime = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'connected': self.connected,
            'protocol': self.protocol,
            'last_update': self.last_update.isoformat() if self.last_update else None,
            'error_message': self.error_message,
        }


class MeterService:
    """Acquisition controller for one DDSU meter.

    Args:
        config: Initial serial configuration
        polling: Timing and retry policy passed to the poller
        transport_factory: Builds the transport for a SerialConfig
            (SerialTransport by default; tests inject fakes)
    """

    def __init__(self, config: SerialConfig = None, polling: PollingConfig = None,
                 transport_factory: Callable[[SerialConfig], Transport] = SerialTransport):
        self.log = get_logger()
        self.polling = polling or PollingConfig()
        self._transport_factory = transport_factory

        # start/stop/update_config; never taken by the poller worker
        self._control_lock = threading.RLock()
        # last reading and status; held only for snapshot reads and replacement
        self._data_lock = threading.Lock()

        self._config = config or SerialConfig()
        self._transport: Optional[Transport] = None
        self._poller: Optional[Poller] = None
        self._status = DeviceStatus(last_update=datetime.now())
        self._last_reading: Optional[Reading] = None

        self.readings = SubscriptionHub("readings", self.polling.subscriber_capacity)
        self.statuses = SubscriptionHub("status", self.polling.subscriber_capacity)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_current_reading(self) -> Optional[Reading]:
        """Latest accepted reading, None if none was received yet."""
        with self._data_lock:
            return self._last_reading

    def get_status(self) -> DeviceStatus:
        with self._data_lock:
            return self._status

    def get_config(self) -> SerialConfig:
        with self._control_lock:
            return self._config

    @property
    def is_running(self) -> bool:
        with self._control_lock:
            return self._poller is not None and self._poller.is_running

    def get_available_ports(self) -> List[str]:
        """Serial ports present on this machine; empty list if enumeration fails."""
        try:
            return list_available_ports()
        except Exception as e:
            self.log.warning(f"Failed to list serial ports: {e}")
            return []

    def get_stats(self) -> Dict:
        with self._control_lock:
            poller_stats = self._poller.get_stats() if self._poller else {}
        return {
            'running': self.is_running,
            'subscribers': len(self.readings),
            'status_subscribers': len(self.statuses),
            'messages_delivered': self.readings.messages_delivered,
            'messages_dropped': self.readings.messages_dropped,
            **poller_stats,
        }

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, subscription_id: str) -> Subscription:
        return self.readings.subscribe(subscription_id)

    def subscribe_status(self, subscription_id: str) -> Subscription:
        return self.statuses.subscribe(subscription_id)

    def unsubscribe(self, subscription_id: str):
        """Remove the id from both the reading and the status hub."""
        self.readings.unsubscribe(subscription_id)
        self.statuses.unsubscribe(subscription_id)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def update_config(self, config: SerialConfig):
        """Replace the serial configuration, stopping acquisition first."""
        with self._control_lock:
            if self._poller is not None or self._transport is not None:
                self.log.info("Configuration changed, stopping acquisition")
                self.stop()
            self._config = config
            self.log.info(f"Serial configuration: {config.describe()}")

    def start(self):
        """Open the port and start polling. No-op while already running.

        Raises:
            ConfigurationError: missing port or invalid slave address
            TransportError: the serial port could not be opened
        """
        with self._control_lock:
            if self._poller is not None and self._poller.is_running:
                self.log.debug("Acquisition already running")
                return

            config = self._config
            try:
                config.validate()
            except ConfigurationError as e:
                self._set_status(connected=False, error_message=str(e))
                raise

            self.log.info(f"Starting acquisition: {config.describe()}")

            transport = self._transport_factory(config)
            try:
                transport.open()
            except TransportError as e:
                self._set_status(connected=False, error_message=str(e))
                raise

            protocol = PROTOCOL_MODBUS_RTU
            if self.polling.probe_on_start:
                try:
                    protocol = detect_protocol(transport, config.slave_id)
                except ProtocolDetectionError as e:
                    self.log.warning(f"Protocol probe failed, polling anyway: {e}")
                    protocol = PROTOCOL_UNKNOWN

            poller = Poller(
                transport, config.slave_id, self.polling,
                publish_callback=self._on_reading,
                failure_callback=self._on_failure
            )
            self._set_status(connected=True, protocol=protocol, error_message=None)
            try:
                poller.start()
            except DDSUError as e:
                transport.close()
                self._set_status(connected=False, error_message=str(e))
                raise

            self._transport = transport
            self._poller = poller

    def stop(self):
        """Stop polling and release the port. Safe when idle."""
        with self._control_lock:
            if self._poller is None and self._transport is None:
                return

            if self._poller is not None:
                self._poller.stop()
                self._poller = None
            if self._transport is not None:
                self._transport.close()
                self._transport = None

            self._set_status(connected=False, error_message=None)
            self.log.info("Acquisition stopped")

    def close(self):
        """Stop acquisition and close every subscription."""
        self.stop()
        self.readings.close()
        self.statuses.close()

    # ------------------------------------------------------------------
    # Poller callbacks (worker thread)
    # ------------------------------------------------------------------

    def _on_reading(self, reading: Reading):
        recovered = False
        with self._data_lock:
            self._last_reading = reading
            if self._status.error_message is not None:
                recovered = True
                self._status = replace(self._status, connected=True, error_message=None,
                                       last_update=reading.timestamp)
            else:
                self._status = replace(self._status, last_update=reading.timestamp)
            status = self._status

        self.readings.broadcast(reading)
        if recovered:
            self.log.info("Device responding again")
            self.statuses.broadcast(status)

    def _on_failure(self, consecutive: int, error: str):
        if consecutive < self.polling.failures_before_offline:
            return

        message = f"Device not responding ({consecutive} failed cycles): {error}"
        with self._data_lock:
            if not self._status.connected:
                return
            self._status = replace(self._status, connected=False, error_message=message,
                                   last_update=datetime.now())
            status = self._status

        self.log.warning(message)
        self.statuses.broadcast(status)

    def _set_status(self, **changes):
        with self._data_lock:
            self._status = replace(self._status, last_update=datetime.now(), **changes)
            status = self._status
        self.statuses.broadcast(status)
