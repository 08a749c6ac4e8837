"""Tests for MeterService: lifecycle, status transitions and fan-out."""

from unittest.mock import patch

import pytest

from ddsu.config import PollingConfig, SerialConfig
from ddsu.detector import PROTOCOL_MODBUS_RTU, PROTOCOL_UNKNOWN
from ddsu.errors import ConfigurationError, ProtocolDetectionError, TransportError
from ddsu.registers import Reading
from ddsu.service import DeviceStatus, MeterService

from conftest import FakeTransport, MeterSimulator


def next_status(subscription, predicate, timeout: float = 2.0) -> DeviceStatus:
    """First status on the subscription matching predicate."""
    while True:
        status = subscription.get(timeout)
        assert status is not None, "no matching status received"
        if predicate(status):
            return status


@pytest.fixture
def line(meter: MeterSimulator) -> FakeTransport:
    return FakeTransport(meter)


@pytest.fixture
def service(serial_config: SerialConfig, fast_polling: PollingConfig, line: FakeTransport):
    svc = MeterService(serial_config, fast_polling, transport_factory=lambda config: line)
    yield svc
    svc.close()


class TestStart:
    def test_missing_port(self, fast_polling: PollingConfig) -> None:
        svc = MeterService(SerialConfig(slave_id=1), fast_polling,
                           transport_factory=lambda config: FakeTransport())
        with pytest.raises(ConfigurationError):
            svc.start()

        status = svc.get_status()
        assert not status.connected
        assert status.error_message == "No serial port selected"
        assert not svc.is_running

    def test_invalid_slave(self, fast_polling: PollingConfig) -> None:
        svc = MeterService(SerialConfig(port="/dev/ttyUSB0", slave_id=0), fast_polling,
                           transport_factory=lambda config: FakeTransport())
        with pytest.raises(ConfigurationError, match="slave address"):
            svc.start()

    def test_open_failure_recorded(self, service: MeterService, line: FakeTransport) -> None:
        line.open_error = TransportError("Serial port /dev/ttyUSB0 does not exist")
        statuses = service.subscribe_status("ui")

        with pytest.raises(TransportError):
            service.start()

        status = next_status(statuses, lambda s: s.error_message is not None)
        assert "does not exist" in status.error_message
        assert not status.connected
        assert not service.is_running

    def test_start_publishes_readings(self, service: MeterService, line: FakeTransport) -> None:
        readings = service.subscribe("ui")
        statuses = service.subscribe_status("ui")

        service.start()

        reading = readings.get(timeout=2)
        assert isinstance(reading, Reading)
        assert reading.voltage == 220.5
        assert service.is_running
        assert service.get_current_reading() is not None
        status = next_status(statuses, lambda s: s.connected)
        assert status.protocol == PROTOCOL_MODBUS_RTU
        assert status.error_message is None

    def test_start_twice_is_noop(self, service: MeterService, line: FakeTransport) -> None:
        service.start()
        service.start()
        assert line.open_count == 1

    def test_probe_failure_still_polls(self, serial_config: SerialConfig, line: FakeTransport,
                                       meter: MeterSimulator) -> None:
        polling = PollingConfig(poll_interval=0.01, retry_delay=0.001, settle_delay=0,
                                segment_pause=0, probe_on_start=True)
        svc = MeterService(serial_config, polling, transport_factory=lambda config: line)
        with patch("ddsu.service.detect_protocol",
                   side_effect=ProtocolDetectionError("none")):
            svc.start()
        try:
            assert svc.is_running
            assert svc.get_status().protocol == PROTOCOL_UNKNOWN
        finally:
            svc.close()


class TestStop:
    def test_stop_releases_port(self, service: MeterService, line: FakeTransport) -> None:
        service.start()
        service.stop()

        assert not service.is_running
        assert not line.is_open
        assert not service.get_status().connected

    def test_stop_when_idle(self, service: MeterService) -> None:
        service.stop()
        service.stop()
        assert not service.is_running

    def test_update_config_stops_acquisition(self, service: MeterService, line: FakeTransport) -> None:
        service.start()
        new_config = SerialConfig(port="/dev/ttyUSB1", baud_rate=19200, slave_id=2)

        service.update_config(new_config)

        assert not service.is_running
        assert not line.is_open
        assert service.get_config() == new_config

    def test_close_ends_subscriptions(self, service: MeterService) -> None:
        readings = service.subscribe("ui")
        service.close()
        assert readings.closed


class TestStatusTransitions:
    def test_offline_after_failure_streak(self, service: MeterService, meter: MeterSimulator) -> None:
        meter.silent = True
        statuses = service.subscribe_status("ui")

        service.start()

        status = next_status(statuses, lambda s: not s.connected)
        assert "Device not responding (3 failed cycles)" in status.error_message
        assert service.get_current_reading() is None

    def test_recovers_on_next_reading(self, service: MeterService, meter: MeterSimulator) -> None:
        meter.silent = True
        statuses = service.subscribe_status("ui")
        service.start()
        next_status(statuses, lambda s: not s.connected)

        meter.silent = False

        status = next_status(statuses, lambda s: s.connected)
        assert status.error_message is None
        assert service.get_current_reading().voltage == 220.5


class TestSubscriptions:
    def test_unsubscribe_removes_both_streams(self, service: MeterService) -> None:
        readings = service.subscribe("ui")
        statuses = service.subscribe_status("ui")

        service.unsubscribe("ui")
        service.unsubscribe("ui")

        assert readings.closed
        assert statuses.closed
        assert len(service.readings) == 0

    def test_pull_accessor_before_start(self, service: MeterService) -> None:
        assert service.get_current_reading() is None

    def test_available_ports_error_is_empty(self, service: MeterService) -> None:
        with patch("ddsu.service.list_available_ports", side_effect=OSError("no sysfs")):
            assert service.get_available_ports() == []

    def test_stats(self, service: MeterService) -> None:
        readings = service.subscribe("ui")
        service.start()
        readings.get(timeout=2)

        stats = service.get_stats()

        assert stats['running']
        assert stats['subscribers'] == 1
        assert stats['readings_accepted'] >= 1
