"""Tests for YAML/env configuration and the saved serial snapshot."""

import json

import pytest

from ddsu.config import ConfigLoader, SerialConfig, SerialConfigStore, get_config
from ddsu.errors import ConfigurationError

CONFIG_YAML = """
general:
  log_level: DEBUG
serial:
  port: /dev/ttyUSB3
  baud_rate: 19200
  parity: e
  stop_bits: 2
  slave_id: 0x0C
polling:
  poll_interval: 2.5
  byte_order: swapped
mqtt:
  enabled: true
  broker: mqtt.local
"""

ENV_KEYS = ("SERIAL_PORT", "SLAVE_ID", "POLL_INTERVAL", "MQTT_PORT", "SERIAL_STOP_BITS",
            "BYTE_ORDER", "DDSU_CONFIG", "LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    ConfigLoader.reset_instance()
    yield
    ConfigLoader.reset_instance()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "ddsu_modbus_monitor.yaml"
    path.write_text(CONFIG_YAML)
    return str(path)


class TestConfigLoader:
    def test_yaml_values(self, config_file) -> None:
        config = ConfigLoader(config_file)

        assert config.config_file == config_file
        assert config.general.log_level == "DEBUG"
        assert config.serial == SerialConfig(port="/dev/ttyUSB3", baud_rate=19200, data_bits=8,
                                             stop_bits=2, parity='E', slave_id=12)
        assert config.polling.poll_interval == 2.5
        assert config.polling.byte_order == "swapped"
        assert config.polling.full_read_every == 10
        assert config.mqtt.enabled
        assert config.mqtt.broker == "mqtt.local"
        assert config.mqtt.topic_prefix == "ddsu"

    def test_env_overrides(self, config_file, monkeypatch) -> None:
        monkeypatch.setenv("SERIAL_PORT", "COM4")
        monkeypatch.setenv("SLAVE_ID", "0x10")
        monkeypatch.setenv("POLL_INTERVAL", "0.5")
        monkeypatch.setenv("SERIAL_STOP_BITS", "1.5")
        monkeypatch.setenv("MQTT_PORT", "not-a-number")

        config = ConfigLoader(config_file)

        assert config.serial.port == "COM4"
        assert config.serial.slave_id == 16
        assert config.serial.stop_bits == 1.5
        assert config.polling.poll_interval == 0.5
        assert config.mqtt.port == 1883

    def test_missing_explicit_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            ConfigLoader(str(tmp_path / "missing.yaml"))

    def test_env_config_path(self, config_file, monkeypatch) -> None:
        monkeypatch.setenv("DDSU_CONFIG", config_file)
        assert ConfigLoader().serial.port == "/dev/ttyUSB3"

    def test_invalid_byte_order(self, tmp_path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("polling:\n  byte_order: little\n")
        with pytest.raises(ValueError, match="byte_order"):
            ConfigLoader(str(path))

    def test_singleton(self, config_file) -> None:
        assert get_config(config_file) is get_config()


class TestSerialConfig:
    def test_valid(self) -> None:
        SerialConfig(port="/dev/ttyUSB0", slave_id=247).validate()

    @pytest.mark.parametrize("config,message", [
        (SerialConfig(slave_id=1), "No serial port"),
        (SerialConfig(port="COM1", slave_id=0), "slave address"),
        (SerialConfig(port="COM1", slave_id=248), "slave address"),
        (SerialConfig(port="COM1", slave_id=1, data_bits=9), "data bits"),
        (SerialConfig(port="COM1", slave_id=1, stop_bits=3), "stop bits"),
        (SerialConfig(port="COM1", slave_id=1, parity='X'), "parity"),
        (SerialConfig(port="COM1", slave_id=1, baud_rate=0), "baud rate"),
    ])
    def test_invalid(self, config: SerialConfig, message: str) -> None:
        with pytest.raises(ConfigurationError, match=message):
            config.validate()

    def test_describe(self) -> None:
        text = SerialConfig(port="/dev/ttyUSB0", slave_id=12).describe()
        assert text == "/dev/ttyUSB0 9600 8N1, slave 0x0C"


class TestSerialConfigStore:
    def test_save_writes_integer_codes(self, tmp_path) -> None:
        path = tmp_path / "data" / "saved_serial_config.json"
        store = SerialConfigStore(str(path))

        store.save(SerialConfig(port="COM3", baud_rate=4800, data_bits=7,
                                stop_bits=1.5, parity='O', slave_id=5))

        assert json.loads(path.read_text()) == {
            "port": "COM3",
            "baudRate": 4800,
            "dataBits": 7,
            "stopBits": 1,
            "parity": 1,
            "slaveID": 5,
        }

    def test_load_round_trip(self, tmp_path) -> None:
        store = SerialConfigStore(str(tmp_path / "snapshot.json"))
        config = SerialConfig(port="/dev/ttyAMA0", stop_bits=2, parity='E', slave_id=3)

        store.save(config)

        assert store.load() == config

    def test_load_missing(self, tmp_path) -> None:
        assert SerialConfigStore(str(tmp_path / "none.json")).load() is None

    def test_load_invalid(self, tmp_path) -> None:
        path = tmp_path / "snapshot.json"
        path.write_text('{"port": "COM1", "parity": 9}')
        with pytest.raises(ConfigurationError):
            SerialConfigStore(str(path)).load()

    def test_load_corrupt_json(self, tmp_path) -> None:
        path = tmp_path / "snapshot.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            SerialConfigStore(str(path)).load()

    def test_clear(self, tmp_path) -> None:
        path = tmp_path / "snapshot.json"
        store = SerialConfigStore(str(path))
        store.save(SerialConfig(port="COM1", slave_id=1))

        store.clear()
        store.clear()

        assert not path.exists()
        assert store.load() is None
