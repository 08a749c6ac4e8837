"""Tests for the entry point helpers and application wiring."""

import json
import signal
from unittest.mock import patch

import pytest

import ddsu_modbus_monitor
from ddsu.config import ConfigLoader, SerialConfig, SerialConfigStore
from ddsu.errors import TransportError
from ddsu_modbus_monitor import DDSUModbusMonitor, clear_serial_config, save_serial_config


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    monkeypatch.setattr(ddsu_modbus_monitor.signal, "signal", lambda *args: None)
    for key in ("SERIAL_PORT", "SLAVE_ID", "SNAPSHOT_FILE", "DDSU_CONFIG", "MQTT_ENABLED"):
        monkeypatch.delenv(key, raising=False)
    ConfigLoader.reset_instance()
    yield
    ConfigLoader.reset_instance()


def write_config(tmp_path, serial_block: str) -> str:
    snapshot = tmp_path / "snapshot.json"
    path = tmp_path / "monitor.yaml"
    path.write_text(
        f"general:\n  snapshot_file: {snapshot}\n  health_file: {tmp_path / 'health'}\n"
        f"serial:\n{serial_block}"
    )
    return str(path)


def test_save_and_clear_snapshot(tmp_path) -> None:
    config_path = write_config(tmp_path, "  port: /dev/ttyUSB0\n  slave_id: 3\n  parity: E\n")

    assert save_serial_config(config_path) == 0
    saved = json.loads((tmp_path / "snapshot.json").read_text())
    assert saved["port"] == "/dev/ttyUSB0"
    assert saved["slaveID"] == 3
    assert saved["parity"] == 2

    assert clear_serial_config(config_path) == 0
    assert not (tmp_path / "snapshot.json").exists()


def test_save_rejects_incomplete_config(tmp_path, capsys) -> None:
    config_path = write_config(tmp_path, "  port: ''\n")

    assert save_serial_config(config_path) == 1
    assert "No serial port selected" in capsys.readouterr().out


def test_list_ports(capsys) -> None:
    with patch("ddsu_modbus_monitor.list_available_ports", return_value=["/dev/ttyUSB0"]):
        assert ddsu_modbus_monitor.list_ports() == 0
    assert capsys.readouterr().out == "/dev/ttyUSB0\n"


def test_snapshot_used_when_port_missing(tmp_path) -> None:
    config_path = write_config(tmp_path, "  port: ''\n")
    SerialConfigStore(str(tmp_path / "snapshot.json")).save(
        SerialConfig(port="/dev/ttyS1", slave_id=9)
    )

    app = DDSUModbusMonitor(config_path)

    assert app.serial_config.port == "/dev/ttyS1"
    assert app.service.get_config().slave_id == 9


def test_configured_port_wins_over_snapshot(tmp_path) -> None:
    config_path = write_config(tmp_path, "  port: /dev/ttyUSB0\n  slave_id: 1\n")
    SerialConfigStore(str(tmp_path / "snapshot.json")).save(
        SerialConfig(port="/dev/ttyS1", slave_id=9)
    )

    app = DDSUModbusMonitor(config_path)

    assert app.serial_config.port == "/dev/ttyUSB0"


def test_health_file(tmp_path) -> None:
    config_path = write_config(tmp_path, "  port: /dev/ttyUSB0\n  slave_id: 1\n")
    app = DDSUModbusMonitor(config_path)

    app._write_health_file()

    lines = (tmp_path / "health").read_text().splitlines()
    assert lines[1] == "stopped"
    assert lines[2] == "mqtt:True"
    assert lines[3] == "serial:False"


def test_signal_during_open_retries_stops_startup(tmp_path) -> None:
    config_path = write_config(tmp_path, "  port: /dev/ttyUSB0\n  slave_id: 1\n")
    app = DDSUModbusMonitor(config_path)
    app.running = True

    def interrupt(seconds):
        app._signal_handler(signal.SIGTERM, None)

    with patch.object(app.service, "start", side_effect=TransportError("busy")) as start, \
            patch("ddsu_modbus_monitor.time.sleep", side_effect=interrupt) as sleep:
        assert not app._start_acquisition()

    assert start.call_count == 1
    assert sleep.call_count == 1
    assert not app.running
