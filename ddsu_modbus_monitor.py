#!/usr/bin/env python3
"""
DDSU Modbus Monitor - Modbus RTU meter acquisition with MQTT bridge

Reads a DDSU energy meter over a serial Modbus RTU line and republishes
its readings to subscribers: the console printer and/or MQTT.

Features:
- Periodic polling with retries and a slower energy register cycle
- Saved serial configuration used when none is configured
- Publish-on-change or publish-all MQTT modes
- Health file for container healthchecks
"""

import sys
import os
import time
import signal
import argparse
import atexit
import threading
from pathlib import Path

from ddsu import (
    __version__,
    setup_logging,
    get_config,
    SerialConfigStore,
    MeterService,
    MQTTPublisher,
    ConfigurationError,
    TransportError,
    list_available_ports,
)

PRINTER_SUBSCRIPTION_ID = "console"


class DDSUModbusMonitor:
    """Main application class"""

    def __init__(self, config_path: str = None, print_readings: bool = False):
        """
        Initialize application.

        Args:
            config_path: Optional path to configuration file
            print_readings: Print every reading to stdout
        """
        self.running = False
        self.print_readings = print_readings
        self._start_time = time.time()
        self.config = get_config(config_path)

        self.log = setup_logging(
            log_level=self.config.general.log_level,
            log_file=self.config.general.log_file or None
        )
        if self.config.config_file:
            self.log.debug(f"Loaded configuration from {self.config.config_file}")

        self.serial_config = self._resolve_serial_config()

        self.service = MeterService(self.serial_config, self.config.polling)
        self.mqtt_publisher = None
        self._printer = None

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _resolve_serial_config(self):
        """Configured serial settings, or the saved snapshot when port or slave is missing"""
        serial_config = self.config.serial
        if serial_config.port and serial_config.slave_id:
            return serial_config

        store = SerialConfigStore(self.config.general.snapshot_file)
        try:
            saved = store.load()
        except ConfigurationError as e:
            self.log.warning(f"Ignoring saved serial config: {e}")
            return serial_config

        if saved is None:
            return serial_config

        self.log.info(f"Using saved serial config from {store.path}")
        return saved

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.log.info("Shutdown signal received")
        self.running = False

    def _init_mqtt(self) -> bool:
        """Initialize MQTT publisher and attach it to the service"""
        if not self.config.mqtt.enabled:
            self.log.info("MQTT publishing disabled")
            return True

        self.mqtt_publisher = MQTTPublisher(self.config.mqtt, self.serial_config.slave_id)
        connected = self.mqtt_publisher.connect()
        if not connected:
            self.log.warning("Failed to connect to MQTT broker")
        else:
            self.mqtt_publisher.publish_status("online")

        # Forward even while disconnected; QoS >= 1 messages queue until reconnect
        self.mqtt_publisher.attach(self.service)
        return connected

    def _init_printer(self):
        """Subscribe a console consumer printing one line per reading"""
        subscription = self.service.subscribe(PRINTER_SUBSCRIPTION_ID)

        def print_loop():
            for reading in subscription:
                print(
                    f"{reading.timestamp:%Y-%m-%d %H:%M:%S}  "
                    f"U={reading.voltage:7.2f} V  I={reading.current:6.3f} A  "
                    f"P={reading.active_power:8.2f} W  Q={reading.reactive_power:8.2f} var  "
                    f"S={reading.apparent_power:8.2f} VA  PF={reading.power_factor:5.3f}  "
                    f"f={reading.frequency:5.2f} Hz  E={reading.active_energy:10.3f} kWh",
                    flush=True
                )

        self._printer = threading.Thread(target=print_loop, name="ConsolePrinter", daemon=True)
        self._printer.start()

    def _wait(self, seconds: float):
        """Sleep in one-second steps until `seconds` pass or a shutdown signal arrives"""
        deadline = time.time() + seconds
        while self.running and time.time() < deadline:
            time.sleep(min(1, deadline - time.time()))

    def _start_acquisition(self) -> bool:
        """Start the meter service, retrying while the port cannot be opened"""
        max_attempts = 10
        initial_delay = 2
        max_delay = 60
        delay = initial_delay

        for attempt in range(1, max_attempts + 1):
            if not self.running:
                self.log.info("Startup interrupted")
                return False
            try:
                self.service.start()
                return True
            except ConfigurationError as e:
                self.log.error(f"Invalid serial configuration: {e}")
                return False
            except TransportError as e:
                if attempt < max_attempts:
                    self.log.warning(
                        f"Serial open attempt {attempt}/{max_attempts} failed ({e}), "
                        f"retrying in {delay}s..."
                    )
                    self._wait(delay)
                    delay = min(delay * 2, max_delay)
                else:
                    self.log.error(f"Serial open failed: {e}")

        self.log.error(f"Failed to open serial port after {max_attempts} attempts")
        return False

    def start(self):
        """Start the application"""
        self.log.info("=" * 60)
        self.log.info(f"DDSU Modbus Monitor v{__version__}")
        self.log.info("=" * 60)

        polling = self.config.polling
        self.log.info(f"Serial: {self.serial_config.describe()}")
        self.log.info(
            f"Poll interval: {polling.poll_interval}s, "
            f"energy every {polling.full_read_every} cycles"
        )

        # Consumers first so the first reading reaches them
        self._init_mqtt()
        if self.print_readings:
            self._init_printer()

        # Signals from here on abort the open retries
        self.running = True
        if not self._start_acquisition():
            self._shutdown()
            sys.exit(1 if self.running else 0)

        self._main_loop()

    def _format_uptime(self) -> str:
        """Format uptime as 'Xd Xh Xm'."""
        elapsed = int(time.time() - self._start_time)
        days = elapsed // 86400
        hours = (elapsed % 86400) // 3600
        minutes = (elapsed % 3600) // 60

        parts = []
        if days > 0:
            parts.append(f"{days}d")
        if hours > 0 or days > 0:
            parts.append(f"{hours}h")
        parts.append(f"{minutes}m")

        return " ".join(parts)

    def _main_loop(self):
        """Main loop - keeps the app running while the poller thread works"""
        mode = self.config.mqtt.publish_mode if self.mqtt_publisher else "no MQTT"
        self.log.info(f"Polling started ({mode})")
        self.log.info("Press Ctrl+C to stop")

        health_interval = 30  # Write health file every 30 seconds
        last_health_write = 0

        while self.running:
            try:
                time.sleep(1)

                now = time.time()
                if now - last_health_write >= health_interval:
                    self._write_health_file()
                    last_health_write = now

            except KeyboardInterrupt:
                break

        self._shutdown()

    def _health_status(self) -> str:
        """healthy, waiting (no reading yet), offline or stopped"""
        if not self.service.is_running:
            return 'stopped'
        if not self.service.get_status().connected:
            return 'offline'
        if self.service.get_current_reading() is None:
            return 'waiting'
        return 'healthy'

    def _write_health_file(self):
        """Write health status to file for Docker healthcheck"""
        try:
            mqtt_connected = self.mqtt_publisher.connected if self.mqtt_publisher else True
            status = self._health_status()
            device = self.service.get_status()

            with open(self.config.general.health_file, 'w') as f:
                f.write(f"{int(time.time())}\n")
                f.write(f"{status}\n")
                f.write(f"mqtt:{mqtt_connected}\n")
                f.write(f"serial:{device.connected}\n")
                f.write(f"uptime:{self._format_uptime()}\n")
        except OSError as e:
            self.log.warning(f"Failed to write health file: {e}")

    def _shutdown(self):
        """Clean shutdown"""
        self.log.info("Shutting down...")

        if self.mqtt_publisher and self.mqtt_publisher.connected:
            self.mqtt_publisher.publish_status("offline")
            time.sleep(0.5)  # Allow message to be sent

        stats = self.service.get_stats()
        self.service.close()

        if self.mqtt_publisher:
            self.mqtt_publisher.disconnect()

        if self._printer is not None:
            self._printer.join(timeout=2)

        if 'cycles' in stats:
            self.log.info(
                f"Modbus stats: {stats['cycles']} cycles, "
                f"{stats['successful_reads']} reads, {stats['failed_reads']} failures, "
                f"{stats['readings_discarded']} discarded"
            )
        self.log.info(
            f"Subscribers: {stats['messages_delivered']} delivered, "
            f"{stats['messages_dropped']} dropped"
        )

        if self.mqtt_publisher:
            mqtt_stats = self.mqtt_publisher.get_stats()
            self.log.info(
                f"MQTT stats: {mqtt_stats['messages_published']} published, "
                f"{mqtt_stats['messages_skipped']} skipped"
            )

        self.log.info("Shutdown complete")


def check_single_instance() -> bool:
    """
    Check if another instance is already running using a PID file.

    Returns:
        True if this is the only instance, False if another instance is running.
    """
    pid_file = Path(__file__).parent / 'data' / 'ddsu_modbus_monitor.pid'
    pid_file.parent.mkdir(parents=True, exist_ok=True)

    if pid_file.exists():
        try:
            with open(pid_file, 'r') as f:
                old_pid = int(f.read().strip())

            try:
                os.kill(old_pid, 0)  # Signal 0 only checks the process exists
                import subprocess
                result = subprocess.run(
                    ['ps', '-p', str(old_pid), '-o', 'command='],
                    capture_output=True, text=True
                )
                if 'ddsu_modbus_monitor' in result.stdout:
                    return False
                # PID reused by another program: stale file
            except ProcessLookupError:
                pass
            except PermissionError:
                return False
        except (ValueError, FileNotFoundError):
            pass

    with open(pid_file, 'w') as f:
        f.write(str(os.getpid()))

    def cleanup_pid():
        try:
            pid_file.unlink()
        except FileNotFoundError:
            pass

    atexit.register(cleanup_pid)
    return True


def list_ports() -> int:
    ports = list_available_ports()
    if not ports:
        print("No serial ports found")
        return 1
    for port in ports:
        print(port)
    return 0


def save_serial_config(config_path: str = None) -> int:
    """Validate the configured serial settings and store them as the snapshot"""
    config = get_config(config_path)
    store = SerialConfigStore(config.general.snapshot_file)
    try:
        config.serial.validate()
        store.save(config.serial)
    except (ConfigurationError, OSError) as e:
        print(f"ERROR: {e}")
        return 1
    print(f"Saved {config.serial.describe()} to {store.path}")
    return 0


def clear_serial_config(config_path: str = None) -> int:
    config = get_config(config_path)
    store = SerialConfigStore(config.general.snapshot_file)
    store.clear()
    print(f"Cleared {store.path}")
    return 0


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="DDSU Modbus Monitor - Read a DDSU energy meter via Modbus RTU"
    )
    parser.add_argument(
        '-c', '--config',
        help='Path to configuration file',
        default=None
    )
    parser.add_argument(
        '-v', '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    parser.add_argument(
        '-f', '--force',
        action='store_true',
        help='Force start even if another instance is running'
    )
    parser.add_argument(
        '--list-ports',
        action='store_true',
        help='List available serial ports and exit'
    )
    parser.add_argument(
        '--save-config',
        action='store_true',
        help='Save the configured serial settings as the fallback snapshot and exit'
    )
    parser.add_argument(
        '--clear-saved-config',
        action='store_true',
        help='Delete the saved serial settings snapshot and exit'
    )
    parser.add_argument(
        '--print',
        action='store_true',
        dest='print_readings',
        help='Print every reading to stdout'
    )
    args = parser.parse_args()

    if args.list_ports:
        sys.exit(list_ports())
    if args.save_config:
        sys.exit(save_serial_config(args.config))
    if args.clear_saved_config:
        sys.exit(clear_serial_config(args.config))

    if not args.force and not check_single_instance():
        print("ERROR: Another instance of ddsu_modbus_monitor is already running!")
        print("Use --force to override this check (not recommended).")
        sys.exit(1)

    app = DDSUModbusMonitor(args.config, print_readings=args.print_readings)
    app.start()


if __name__ == "__main__":
    main()
