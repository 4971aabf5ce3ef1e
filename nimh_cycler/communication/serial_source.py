"""
Serial Source Interface for the bench supply

Sends SCPI text commands over RS-232 and reads back query responses:
- Lazy port open on first use, held for the process lifetime
- Bounded read timeout per query (soft failure on empty response)
- Retry with exponential backoff and port reopen on write errors
- Statistics and logging
"""

import serial
import serial.tools.list_ports
import threading
import time
import logging
from typing import Optional

from nimh_cycler.communication.scpi import is_query


class InstrumentConnectionError(Exception):
    """Raised when the instrument port cannot be opened on first use."""


class SerialSource:
    """
    Source Interface over a serial port.

    Only one request is ever in flight: every send/query blocks until the
    command is written and (for queries) a line is read or the read timeout
    expires. The instrument cannot handle pipelined requests.
    """

    _PARITIES = {
        'N': serial.PARITY_NONE,
        'E': serial.PARITY_EVEN,
        'O': serial.PARITY_ODD,
    }

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        bytesize: int = 8,
        stopbits: int = 2,
        parity: str = 'N',
        dsrdtr: bool = True,
        timeout: float = 0.2,
        inter_byte_timeout: Optional[float] = 0.05,
        write_timeout: float = 1.0,
        retry_max: int = 3,
        retry_backoff: float = 0.1,
        verbose: bool = False
    ):
        """
        Initialize serial source.

        Args:
            port: Serial port (e.g., 'COM2' on Windows, '/dev/ttyUSB0' on Linux)
            baudrate: Baud rate (default: 9600, E3631A maximum)
            bytesize: Data bits (default: 8)
            stopbits: Stop bits (default: 2)
            parity: 'N', 'E' or 'O' (default: 'N')
            dsrdtr: Enable DSR/DTR hardware handshake (default: True)
            timeout: Read timeout in seconds for one query (default: 0.2)
            inter_byte_timeout: Max gap between response characters (default: 0.05)
            write_timeout: Write timeout in seconds (default: 1.0)
            retry_max: Maximum write attempts (default: 3)
            retry_backoff: Retry backoff multiplier (default: 0.1)
            verbose: Log raw command traffic (default: False)
        """
        self._port = port
        self._baudrate = baudrate
        self._bytesize = bytesize
        self._stopbits = stopbits
        self._parity = parity
        self._dsrdtr = dsrdtr
        self._timeout = timeout
        self._inter_byte_timeout = inter_byte_timeout
        self._write_timeout = write_timeout
        self._retry_max = retry_max
        self._retry_backoff = retry_backoff
        self._verbose = verbose

        self._serial: Optional[serial.Serial] = None
        self._lock = threading.Lock()

        # Statistics
        self._command_count = 0
        self._query_count = 0
        self._empty_count = 0
        self._error_count = 0
        self._last_error: Optional[str] = None

        self._logger = logging.getLogger(__name__)
        if verbose:
            self._logger.setLevel(logging.DEBUG)
        else:
            self._logger.setLevel(logging.INFO)

    @classmethod
    def from_config(cls, serial_config: dict, verbose: bool = False) -> 'SerialSource':
        """Build from the 'serial' section of the cycler configuration."""
        return cls(
            port=serial_config['port'],
            baudrate=serial_config['baudrate'],
            bytesize=serial_config['bytesize'],
            stopbits=serial_config['stopbits'],
            parity=serial_config['parity'],
            dsrdtr=serial_config['dsrdtr'],
            timeout=serial_config['timeout'],
            inter_byte_timeout=serial_config['inter_byte_timeout'],
            write_timeout=serial_config['write_timeout'],
            retry_max=serial_config['retry_max'],
            retry_backoff=serial_config['retry_backoff'],
            verbose=verbose
        )

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def open(self) -> bool:
        """
        Open serial port with error handling.

        Returns:
            True if successful, False otherwise
        """
        try:
            if self.is_open:
                return True

            self._serial = serial.Serial(
                port=self._port,
                baudrate=self._baudrate,
                bytesize=self._bytesize,
                stopbits=self._stopbits,
                parity=self._PARITIES.get(self._parity, serial.PARITY_NONE),
                dsrdtr=self._dsrdtr,
                timeout=self._timeout,
                inter_byte_timeout=self._inter_byte_timeout,
                write_timeout=self._write_timeout
            )

            self._logger.debug(f"Opened serial port: {self._port} at {self._baudrate} baud")
            return True

        except serial.SerialException as e:
            self._last_error = f"Serial port error: {e}"
            self._logger.error(self._last_error)
            return False

        except (OSError, ValueError) as e:
            self._last_error = f"Unexpected error opening serial port: {e}"
            self._logger.error(self._last_error)
            return False

    def close(self):
        """Close serial port."""
        if self.is_open:
            try:
                self._serial.close()
                self._logger.debug(f"Closed serial port: {self._port}")
            except serial.SerialException as e:
                self._logger.warning(f"Error closing serial port: {e}")

    def _ensure_open(self):
        if not self.is_open and not self.open():
            raise InstrumentConnectionError(self._last_error or f"Cannot open {self._port}")

    def _write_with_retry(self, command: str) -> bool:
        """
        Write one newline-terminated command with retry logic.

        Returns:
            True if successful, False otherwise
        """
        data = (command + '\n').encode('ascii', errors='replace')

        for attempt in range(self._retry_max):
            try:
                bytes_written = self._serial.write(data)

                if bytes_written is not None and bytes_written != len(data):
                    raise serial.SerialTimeoutException(
                        f"Only wrote {bytes_written} of {len(data)} bytes"
                    )

                self._serial.flush()
                self._logger.debug(f"-> {command}")
                return True

            except serial.SerialException as e:
                # SerialTimeoutException is a subclass
                self._last_error = f"Serial error (attempt {attempt + 1}/{self._retry_max}): {e}"
                self._logger.warning(self._last_error)

                if attempt < self._retry_max - 1:
                    time.sleep(self._retry_backoff * (2 ** attempt))

                    self.close()
                    if not self.open():
                        break

        self._error_count += 1
        return False

    def _read_response(self, command: str) -> str:
        try:
            raw = self._serial.readline()
        except serial.SerialException as e:
            self._last_error = f"Read error after '{command}': {e}"
            self._logger.warning(self._last_error)
            self._error_count += 1
            raw = b''

        response = raw.decode('ascii', errors='ignore').strip()
        if not response:
            self._empty_count += 1
            self._logger.warning(f"No response to: {command}")
        else:
            self._logger.debug(f"<- {response}")
        return response

    def send(self, command: str):
        """
        Send a command. Queries are routed through query() so their
        response never lingers in the input buffer.
        """
        if is_query(command):
            self.query(command)
            return

        with self._lock:
            self._ensure_open()
            if self._write_with_retry(command):
                self._command_count += 1

    def query(self, command: str) -> str:
        """
        Send a query and return the stripped response line.

        Returns:
            Response text, '' if the instrument did not answer in time
        """
        with self._lock:
            self._ensure_open()
            if not self._write_with_retry(command):
                return ''
            self._query_count += 1
            return self._read_response(command)

    def flush_input(self) -> str:
        """Discard anything the instrument sent unsolicited (e.g. power-on noise)."""
        with self._lock:
            self._ensure_open()
            try:
                pending = self._serial.read(self._serial.in_waiting or 0)
                self._serial.reset_input_buffer()
            except serial.SerialException as e:
                self._logger.warning(f"Error flushing input: {e}")
                return ''
            return pending.decode('ascii', errors='ignore')

    def get_statistics(self) -> dict:
        """
        Get transport statistics.

        Returns:
            Dictionary with statistics:
            - command_count: Commands written successfully
            - query_count: Queries written successfully
            - empty_count: Queries that timed out with no response
            - error_count: Number of errors
            - last_error: Last error message (if any)
        """
        with self._lock:
            return {
                'command_count': self._command_count,
                'query_count': self._query_count,
                'empty_count': self._empty_count,
                'error_count': self._error_count,
                'last_error': self._last_error
            }

    def reset_statistics(self):
        """Reset statistics counters."""
        with self._lock:
            self._command_count = 0
            self._query_count = 0
            self._empty_count = 0
            self._error_count = 0
            self._last_error = None

    @staticmethod
    def list_available_ports() -> list:
        """
        List available serial ports.

        Returns:
            List of available port names
        """
        ports = serial.tools.list_ports.comports()
        return [port.device for port in ports]
