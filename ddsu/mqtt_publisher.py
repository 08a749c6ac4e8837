"""MQTT bridge: re-exposes meter readings and device status over MQTT

Topics:
  {prefix}/status                              online / offline (retained, LWT)
  {prefix}/meter/{slave_id}/{field}            one value per reading field
  {prefix}/meter/{slave_id}/{field}/unit       unit of the field (retained)
  {prefix}/meter/{slave_id}/timestamp          capture time of the reading
  {prefix}/meter/{slave_id}/device_status      DeviceStatus as JSON
"""

import time
import json
import threading
from typing import Dict, Any, List, Optional
import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .hub import Subscription
from .logging_setup import get_logger
from .registers import DATA_POINTS, FIELD_NAMES, Reading

# Retry configuration
RETRY_MAX_ATTEMPTS = 5
RETRY_INITIAL_DELAY = 2  # seconds
RETRY_MAX_DELAY = 60  # seconds
RETRY_BACKOFF_FACTOR = 2
RECONNECT_CHECK_INTERVAL = 30  # seconds

DEFAULT_SUBSCRIPTION_ID = "mqtt"


class MQTTPublisher:
    """
    MQTT publisher fed by MeterService subscriptions.

    Features:
    - Publish-on-change or publish-all mode
    - Automatic reconnection with a monitor thread
    - Last will on the status topic
    - Forwarder threads draining reading and status subscriptions
    """

    def __init__(self, config: MQTTConfig, slave_id: int):
        """
        Initialize MQTT publisher.

        Args:
            config: MQTT configuration
            slave_id: Meter slave address, used in topic paths
        """
        self.config = config
        self.slave_id = slave_id
        self.publish_mode = config.publish_mode
        self.client: mqtt.Client = None
        self._connected = threading.Event()
        self.last_values: Dict[str, Any] = {}
        self.lock = threading.Lock()
        self.log = get_logger()

        # Stats
        self.messages_published = 0
        self.messages_skipped = 0
        self.connection_count = 0
        self.disconnection_count = 0

        # Reconnection thread control
        self._stop_reconnect = threading.Event()
        self._reconnect_thread = None
        self._loop_started = False

        # Subscription forwarding
        self._service = None
        self._subscription_id: Optional[str] = None
        self._forwarders: List[threading.Thread] = []

        if config.enabled:
            self._setup_client()

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @connected.setter
    def connected(self, value: bool):
        if value:
            self._connected.set()
        else:
            if self._connected.is_set():
                self.disconnection_count += 1
            self._connected.clear()

    @property
    def status_topic(self) -> str:
        return f"{self.config.topic_prefix}/status"

    def _setup_client(self):
        """Setup MQTT client with callbacks"""
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)

        if self.config.username:
            self.client.username_pw_set(
                self.config.username,
                self.config.password
            )

        self.client.max_queued_messages_set(1000)
        self.client.will_set(self.status_topic, payload="offline", qos=1, retain=True)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.reconnect_delay_set(min_delay=1, max_delay=60)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Handle connection established"""
        if reason_code == 0:
            self.connected = True
            self.connection_count += 1
            self.log.info(
                f"MQTT connected to {self.config.broker}:{self.config.port}"
            )
            self.publish_units()
        else:
            self.connected = False
            self.log.error(f"MQTT connection failed: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Paho reconnects on its own; the monitor thread logs the transitions."""
        self.connected = False
        if reason_code != 0:
            self.log.warning(f"MQTT disconnected unexpectedly: {reason_code}")

    def _try_connect(self) -> bool:
        """
        Attempt a single connection to the broker.

        Only valid while paho's network loop is not running yet; once it
        runs, paho handles reconnection itself.
        """
        try:
            self.client.connect(
                self.config.broker,
                self.config.port,
                keepalive=60
            )
            self.client.loop_start()
            self._loop_started = True

            for _ in range(10):
                if self.connected:
                    break
                time.sleep(0.1)

            return self.connected

        except Exception as e:
            self.log.warning(f"MQTT connection failed: {e}")
            return False

    def connect(self) -> bool:
        """
        Connect to the broker with retry logic.

        Returns:
            True if connection successful
        """
        if not self.config.enabled:
            self.log.info("MQTT publishing disabled")
            return False

        delay = RETRY_INITIAL_DELAY

        for attempt in range(1, RETRY_MAX_ATTEMPTS + 1):
            if self._try_connect():
                self._start_reconnect_thread()
                return True

            if attempt < RETRY_MAX_ATTEMPTS:
                self.log.info(
                    f"MQTT connection attempt {attempt}/{RETRY_MAX_ATTEMPTS} failed, "
                    f"retrying in {delay}s..."
                )
                time.sleep(delay)
                delay = min(delay * RETRY_BACKOFF_FACTOR, RETRY_MAX_DELAY)

        self.log.warning(
            f"MQTT: all {RETRY_MAX_ATTEMPTS} connection attempts failed. "
            "Will continue trying in background."
        )
        self._start_reconnect_thread()
        return False

    def _start_reconnect_thread(self):
        if self._reconnect_thread is not None and self._reconnect_thread.is_alive():
            return

        self._stop_reconnect.clear()
        self._reconnect_thread = threading.Thread(
            target=self._reconnect_loop,
            name="MQTT-Reconnect",
            daemon=True
        )
        self._reconnect_thread.start()

    def _reconnect_loop(self):
        """Monitor connection state; connect manually only if paho's loop never started."""
        was_connected = self.connected
        while not self._stop_reconnect.is_set():
            if not self.connected:
                if was_connected:
                    self.log.warning("MQTT connection lost, paho auto-reconnect active")
                    was_connected = False

                if not self._loop_started and self._try_connect():
                    self.log.info("MQTT connected successfully")
                    was_connected = True
            elif not was_connected:
                self.log.info("MQTT reconnected successfully")
                was_connected = True

            self._stop_reconnect.wait(RECONNECT_CHECK_INTERVAL)

    def disconnect(self):
        """Stop forwarding and disconnect from the broker"""
        self.detach()

        self._stop_reconnect.set()
        if self._reconnect_thread is not None and self._reconnect_thread.is_alive():
            self._reconnect_thread.join(timeout=2)

        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
        self.connected = False
        self.log.info("MQTT disconnected")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _build_topic(self, field: str = None) -> str:
        """Topic like 'ddsu/meter/12/voltage'."""
        base = f"{self.config.topic_prefix}/meter/{self.slave_id}"
        if field:
            return f"{base}/{field}"
        return base

    def _should_publish(self, topic: str, value: Any) -> bool:
        if self.publish_mode == 'all':
            return True

        with self.lock:
            if self.last_values.get(topic, object()) == value:
                return False
            self.last_values[topic] = value
        return True

    def _publish(self, topic: str, payload: str, retain: bool = None) -> bool:
        """
        Internal publish method.

        With QoS 0, messages are dropped while disconnected; with QoS >= 1
        paho queues them for delivery on reconnect.
        """
        if not self.client:
            return False

        if retain is None:
            retain = self.config.retain

        try:
            result = self.client.publish(
                topic,
                payload,
                qos=self.config.qos,
                retain=retain
            )

            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                self.messages_published += 1
                return True
            elif result.rc == mqtt.MQTT_ERR_QUEUE_SIZE:
                self.log.warning("MQTT outgoing queue full, message dropped")
            elif result.rc in (mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_CONN_LOST):
                self.connected = False

            return False

        except Exception as e:
            self.log.error(f"MQTT publish error on {topic}: {e}")
            return False

    def publish(self, topic: str, value: Any, retain: bool = None) -> bool:
        """Publish a value, JSON-encoding dicts and lists and rounding floats."""
        if isinstance(value, (dict, list)):
            payload = json.dumps(value)
        elif isinstance(value, float):
            payload = str(round(value, 3))
        else:
            payload = str(value)

        return self._publish(topic, payload, retain)

    def publish_if_changed(self, topic: str, value: Any, retain: bool = None) -> bool:
        if self._should_publish(topic, value):
            return self.publish(topic, value, retain)

        self.messages_skipped += 1
        return False

    def publish_reading(self, reading: Reading):
        """Publish every measurement field of a reading."""
        if not self.client:
            return

        for name, value in reading.values().items():
            self.publish_if_changed(self._build_topic(name), round(value, 3))

        self.publish(self._build_topic('timestamp'), reading.timestamp.isoformat())

    def publish_units(self):
        """Publish the unit of every measurement field (retained)."""
        for point in DATA_POINTS:
            # power factor is dimensionless; an empty retained payload would clear the topic
            if point.unit:
                topic = self._build_topic(f"{FIELD_NAMES[point.address]}/unit")
                self.publish(topic, point.unit, retain=True)

    def publish_device_status(self, status):
        """Publish a DeviceStatus snapshot as JSON (retained)."""
        if not self.client:
            return
        self.publish(self._build_topic('device_status'), status.to_dict(), retain=True)

    def publish_status(self, status: str):
        """Publish bridge status ('online' / 'offline', retained)."""
        self.publish(self.status_topic, status, retain=True)

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    def attach(self, service, subscription_id: str = DEFAULT_SUBSCRIPTION_ID):
        """Subscribe to a MeterService and forward its streams until detach()."""
        self.detach()
        self._service = service
        self._subscription_id = subscription_id

        readings = service.subscribe(subscription_id)
        statuses = service.subscribe_status(subscription_id)
        self._forwarders = [
            threading.Thread(target=self._forward_readings, args=(readings,),
                             name="MQTT-Readings", daemon=True),
            threading.Thread(target=self._forward_statuses, args=(statuses,),
                             name="MQTT-Status", daemon=True),
        ]
        for thread in self._forwarders:
            thread.start()
        self.log.info(f"MQTT forwarding readings of slave {self.slave_id} to {self._build_topic()}")

    def detach(self):
        """Unsubscribe and wait for the forwarder threads to drain."""
        if self._service is None:
            return
        self._service.unsubscribe(self._subscription_id)
        for thread in self._forwarders:
            thread.join(timeout=2)
        self._service = None
        self._subscription_id = None
        self._forwarders = []

    def _forward_readings(self, subscription: Subscription):
        for reading in subscription:
            self.publish_reading(reading)

    def _forward_statuses(self, subscription: Subscription):
        for status in subscription:
            self.publish_device_status(status)

    def get_stats(self) -> Dict:
        return {
            'connected': self.connected,
            'messages_published': self.messages_published,
            'messages_skipped': self.messages_skipped,
            'connection_count': self.connection_count,
            'disconnection_count': self.disconnection_count,
        }
