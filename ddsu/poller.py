"""Polling engine for the DDSU meter

Architecture:
- One worker thread per Running period, driven by a cancellation Event
- Immediate full read on start, then one cycle per poll interval
- Every Nth cycle reads electrical + energy blocks, the others only the
  electrical block and carry the last energy value forward
- Each block read is retried with increasing backoff
- Communication lock: one request/response exchange at a time
"""

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional

from .config import PollingConfig
from .errors import AlreadyRunningError, DDSUError, FramingError, TransportError
from .frame import (
    FUNCTION_READ_HOLDING_REGISTERS, MIN_RESPONSE_LENGTH, build_read_frame,
    expected_response_length, parse_response,
)
from .logging_setup import get_logger
from .registers import (
    ELECTRICAL_BLOCK_QUANTITY, ELECTRICAL_BLOCK_START, ENERGY_BLOCK_QUANTITY,
    ENERGY_BLOCK_START, Reading, RegisterBlock, decode, filter_reading, has_integrity,
)
from .transport import Transport

RESPONSE_BUFFER_SIZE = 256


class Poller:
    """Reads the meter periodically and hands accepted readings to a callback.

    Args:
        transport: Open byte channel to the meter
        slave_id: Modbus slave address
        config: Timing and retry policy
        publish_callback: Called from the worker with every accepted Reading
        failure_callback: Called from the worker with (consecutive failed
            cycles, last error text) after each cycle that yields no reading
    """

    def __init__(self, transport: Transport, slave_id: int,
                 config: PollingConfig = None,
                 publish_callback: Callable[[Reading], None] = None,
                 failure_callback: Callable[[int, str], None] = None):
        self.transport = transport
        self.slave_id = slave_id
        self.config = config or PollingConfig()
        self.publish_callback = publish_callback
        self.failure_callback = failure_callback
        self.log = get_logger()

        # Running flag, cancellation token and worker
        self._state_lock = threading.Lock()
        self._running = False
        self._stop_event: Optional[threading.Event] = None
        self._worker: Optional[threading.Thread] = None

        # One request/response exchange on the wire at a time
        self._comm_lock = threading.Lock()

        self._data_lock = threading.Lock()
        self._last_reading: Optional[Reading] = None
        self._last_energy: Optional[float] = None

        self._consecutive_failures = 0
        self._last_error = ""
        self.cycles = 0
        self.successful_reads = 0
        self.failed_reads = 0
        self.readings_accepted = 0
        self.readings_discarded = 0

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    def start(self):
        """Launch the worker. Raises AlreadyRunningError if already running."""
        with self._state_lock:
            if self._running:
                raise AlreadyRunningError()

            stop_event = threading.Event()
            self._stop_event = stop_event
            self._worker = threading.Thread(
                target=self._run, args=(stop_event,), name="DDSUPoller", daemon=True
            )
            self._running = True
            self._worker.start()

    def stop(self, timeout: float = 5.0):
        """Cancel the worker and wait for it to exit. No-op when idle."""
        with self._state_lock:
            if not self._running:
                return
            self._stop_event.set()
            self._running = False
            worker = self._worker
            self._worker = None

        # A callback running on the worker may stop the poller
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
            if worker.is_alive():
                self.log.warning(f"Poller: worker still finishing after {timeout}s")

    @property
    def last_reading(self) -> Optional[Reading]:
        """Most recent accepted reading, None before the first one."""
        with self._data_lock:
            return self._last_reading

    def get_stats(self) -> Dict:
        return {
            'running': self.is_running,
            'cycles': self.cycles,
            'successful_reads': self.successful_reads,
            'failed_reads': self.failed_reads,
            'readings_accepted': self.readings_accepted,
            'readings_discarded': self.readings_discarded,
            'consecutive_failures': self._consecutive_failures,
            'last_error': self._last_error,
        }

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    def _run(self, stop_event: threading.Event):
        self.log.info(
            f"Poller: started for slave 0x{self.slave_id:02X} "
            f"({self.config.poll_interval}s interval, full read every {self.config.full_read_every} cycles)"
        )

        # First reading without waiting a full period
        self._poll_cycle(True, stop_event)

        counter = 0
        while not stop_event.wait(self.config.poll_interval):
            counter += 1
            self._poll_cycle(counter % self.config.full_read_every == 0, stop_event)

        self.log.info("Poller: stopped")

    def _poll_cycle(self, full: bool, stop_event: threading.Event):
        """Run one acquisition; never raises."""
        self.cycles += 1
        try:
            reading = self._acquire(full, stop_event)
        except Exception as e:
            self.log.error(f"Poller: unexpected error in cycle {self.cycles}: {e}", exc_info=True)
            reading = None
            self._last_error = str(e)

        if reading is None:
            if not stop_event.is_set():
                self._record_failure()
            return

        if not has_integrity(reading):
            self.readings_discarded += 1
            self.log.debug("Poller: all-zero reading discarded")
            return

        if full:
            self.log.info(
                f"Cycle {self.cycles}: U={reading.voltage:.1f}V, I={reading.current:.3f}A, "
                f"P={reading.active_power:.1f}W, f={reading.frequency:.1f}Hz, "
                f"E={reading.active_energy:.3f}kWh"
            )
        self._accept(reading)

    def _acquire(self, full: bool, stop_event: threading.Event) -> Optional[Reading]:
        """Read the register blocks of one cycle and decode them."""
        block = RegisterBlock()

        electrical = self._read_block_with_retry(
            ELECTRICAL_BLOCK_START, ELECTRICAL_BLOCK_QUANTITY, stop_event
        )
        if electrical is None:
            self.log.debug(f"Poller: electrical block read failed ({self._last_error})")
            return None
        block.set_electrical(electrical)

        energy_read = False
        if full:
            energy = self._read_block_with_retry(
                ENERGY_BLOCK_START, ENERGY_BLOCK_QUANTITY, stop_event
            )
            if energy is not None:
                block.set_energy(energy)
                energy_read = True
            else:
                self.log.warning(f"Poller: energy block read failed ({self._last_error}), keeping previous value")

        reading = filter_reading(
            decode(block, datetime.now(), self.config.byte_order),
            self.config.value_sentinel
        )

        if energy_read:
            self._last_energy = reading.active_energy
        elif self._last_energy is not None:
            reading = replace(reading, active_energy=self._last_energy)

        return reading

    def _accept(self, reading: Reading):
        with self._data_lock:
            self._last_reading = reading
        self.readings_accepted += 1

        if self._consecutive_failures:
            self.log.info(f"Poller: device responding again after {self._consecutive_failures} failed cycles")
        self._consecutive_failures = 0

        if self.publish_callback:
            try:
                self.publish_callback(reading)
            except Exception as e:
                self.log.error(f"Poller: publish callback failed: {e}", exc_info=True)

    def _record_failure(self):
        self._consecutive_failures += 1
        if self._consecutive_failures == self.config.failures_before_offline:
            self.log.warning(
                f"Poller: no data for {self._consecutive_failures} cycles ({self._last_error})"
            )
        else:
            self.log.debug(f"Poller: cycle failed ({self._consecutive_failures} consecutive)")

        if self.failure_callback:
            try:
                self.failure_callback(self._consecutive_failures, self._last_error)
            except Exception as e:
                self.log.error(f"Poller: failure callback failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Register I/O
    # ------------------------------------------------------------------

    def _read_block_with_retry(self, start_address: int, quantity: int,
                               stop_event: threading.Event) -> Optional[bytes]:
        """Read one register block, retrying with increasing backoff.

        Returns:
            Register payload of exactly 2*quantity bytes, or None
        """
        expected = quantity * 2
        attempts = self.config.retry_attempts

        for attempt in range(attempts):
            try:
                data = self.read_registers(start_address, quantity)
                if len(data) == expected:
                    self.successful_reads += 1
                    return data
                kind = "short" if len(data) < expected else "oversized"
                self._last_error = f"{kind} payload: {len(data)} of {expected} bytes"
            except DDSUError as e:
                self._last_error = str(e)

            if attempt < attempts - 1:
                self.log.debug(
                    f"Poller: read 0x{start_address:04X} failed ({self._last_error}), "
                    f"retry {attempt + 1}/{attempts - 1}"
                )
                if stop_event.wait((attempt + 1) * self.config.retry_delay):
                    break

        self.failed_reads += 1
        return None

    def read_registers(self, start_address: int, quantity: int) -> bytes:
        """One request/response exchange.

        Raises:
            TransportError: port closed, write failure or no response
            FramingError: malformed response, or an answer from another
                slave or function
            ModbusExceptionResponse: device rejected the request
        """
        with self._comm_lock:
            if not self.transport.is_open:
                raise TransportError("Serial port not open")

            self._discard_stale_bytes()

            request = build_read_frame(self.slave_id, start_address, quantity)
            self.transport.write(request)

            # Give the device time to process the request
            if self.config.settle_delay > 0:
                time.sleep(self.config.settle_delay)

            response = self._read_response(expected_response_length(quantity))
            if len(response) < MIN_RESPONSE_LENGTH:
                raise TransportError("No response from device")

            frame = parse_response(response)
            if frame.slave_id != self.slave_id or frame.function != FUNCTION_READ_HOLDING_REGISTERS:
                raise FramingError(
                    f"Unexpected response from slave 0x{frame.slave_id:02X} "
                    f"(function 0x{frame.function:02X}), expected slave 0x{self.slave_id:02X}"
                )
            return frame.data

    def _discard_stale_bytes(self):
        """Drop bytes left in the receive buffer by an earlier exchange."""
        for _ in range(self.config.flush_attempts):
            try:
                stale = self.transport.read_with_timeout(RESPONSE_BUFFER_SIZE, self.config.flush_timeout)
            except TransportError:
                break
            if not stale:
                break
            self.log.debug(f"Poller: discarded {len(stale)} stale bytes")

    def _read_response(self, expected_length: int) -> bytes:
        """Accumulate response segments until complete or the line goes quiet."""
        buffer = bytearray()
        for _ in range(self.config.max_segments):
            chunk = self.transport.read_with_timeout(
                RESPONSE_BUFFER_SIZE - len(buffer), self.config.segment_timeout
            )
            if not chunk:
                break
            buffer += chunk
            if len(buffer) >= expected_length or len(buffer) >= RESPONSE_BUFFER_SIZE:
                break
            if self.config.segment_pause > 0:
                time.sleep(self.config.segment_pause)
        return bytes(buffer)
