# Printer Transport - delivers ESC/POS bytes to TillSync receipt printers
# Network (raw TCP 9100), serial (pyserial) and the Windows spooler (pywin32)

import logging
import socket
import sys
from dataclasses import dataclass
from typing import Optional

import serial

# Windows spooler - optional (pywin32)
WIN32_AVAILABLE = False
if sys.platform == 'win32':
    try:
        import win32print
        WIN32_AVAILABLE = True
    except ImportError:
        pass

logger = logging.getLogger(__name__)

DEFAULT_NETWORK_PORT = 9100
DEFAULT_BAUDRATE = 9600


@dataclass
class PrinterDestination:
    kind: str  # 'network', 'serial', 'spooler'
    host: Optional[str] = None
    port: int = DEFAULT_NETWORK_PORT
    serial_port: Optional[str] = None
    baudrate: int = DEFAULT_BAUDRATE
    printer_name: Optional[str] = None

    def __str__(self) -> str:
        if self.kind == 'network':
            return f"{self.host}:{self.port}"
        if self.kind == 'serial':
            return f"serial:{self.serial_port}@{self.baudrate}"
        return f"spooler:{self.printer_name}"


@dataclass
class PrintResult:
    success: bool
    timed_out: bool = False
    error: Optional[str] = None
    bytes_sent: int = 0

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'timed_out': self.timed_out,
            'error': self.error,
            'bytes_sent': self.bytes_sent,
        }


def parse_destination(destination: str) -> PrinterDestination:
    """Parse 'host:port', 'tcp://host:port', 'serial:COM3@9600' or 'spooler:Printer Name'."""
    if not destination or not str(destination).strip():
        raise ValueError("Printer destination is empty")
    destination = str(destination).strip()
    lowered = destination.lower()

    if lowered.startswith('serial:'):
        target = destination[len('serial:'):]
        port, _, baud = target.partition('@')
        if not port:
            raise ValueError(f"Serial destination needs a port: {destination!r}")
        try:
            baudrate = int(baud) if baud else DEFAULT_BAUDRATE
        except ValueError:
            raise ValueError(f"Invalid baud rate in {destination!r}")
        return PrinterDestination('serial', serial_port=port, baudrate=baudrate)

    if lowered.startswith('spooler:'):
        name = destination[len('spooler:'):]
        if not name:
            raise ValueError(f"Spooler destination needs a printer name: {destination!r}")
        return PrinterDestination('spooler', printer_name=name)

    if lowered.startswith('tcp://'):
        destination = destination[len('tcp://'):]
    host, sep, port = destination.rpartition(':')
    if not sep:
        host, port = destination, ''
    if not host:
        raise ValueError(f"Network destination needs a host: {destination!r}")
    try:
        port_number = int(port) if port else DEFAULT_NETWORK_PORT
    except ValueError:
        raise ValueError(f"Invalid port in {destination!r}")
    return PrinterDestination('network', host=host, port=port_number)


class PrinterTransport:
    """Sends a finished receipt byte stream to one printer"""

    def __init__(self, timeout: float = 5):
        self.timeout = timeout

    def send(self, data: bytes, destination) -> PrintResult:
        if not isinstance(destination, PrinterDestination):
            try:
                destination = parse_destination(destination)
            except ValueError as e:
                return PrintResult(False, error=str(e))

        if destination.kind == 'network':
            return self._send_network(data, destination)
        if destination.kind == 'serial':
            return self._send_serial(data, destination)
        return self._send_spooler(data, destination)

    def _send_network(self, data: bytes, destination: PrinterDestination) -> PrintResult:
        try:
            with socket.create_connection((destination.host, destination.port), timeout=self.timeout) as conn:
                conn.sendall(data)
        except socket.timeout:
            logger.error("Network printer %s timed out", destination)
            return PrintResult(False, timed_out=True, error='Network printer connection timeout')
        except OSError as e:
            logger.error("Network printer %s connection error: %s", destination, e)
            return PrintResult(False, error=f"Failed to connect to network printer: {e}")
        logger.info("Sent %d bytes to network printer %s", len(data), destination)
        return PrintResult(True, bytes_sent=len(data))

    def _send_serial(self, data: bytes, destination: PrinterDestination) -> PrintResult:
        try:
            ser = serial.Serial(
                destination.serial_port,
                destination.baudrate,
                timeout=self.timeout,
                write_timeout=self.timeout,
            )
        except serial.SerialException as e:
            logger.error("Serial printer %s could not be opened: %s", destination, e)
            return PrintResult(False, error=str(e))
        try:
            written = ser.write(data)
            ser.flush()
        except serial.SerialTimeoutException:
            logger.error("Serial printer %s write timed out", destination)
            return PrintResult(False, timed_out=True, error='Serial write timeout')
        except serial.SerialException as e:
            logger.error("Serial printer %s write failed: %s", destination, e)
            return PrintResult(False, error=str(e))
        finally:
            ser.close()
        logger.info("Sent %s bytes to serial printer %s", written, destination)
        return PrintResult(True, bytes_sent=written or len(data))

    def _send_spooler(self, data: bytes, destination: PrinterDestination) -> PrintResult:
        if not WIN32_AVAILABLE:
            logger.warning("pywin32 not installed; cannot print to spooler %s", destination.printer_name)
            return PrintResult(False, error='Windows spooler printing requires pywin32')
        try:
            handle = win32print.OpenPrinter(destination.printer_name)
            try:
                win32print.StartDocPrinter(handle, 1, ('TillSync Receipt', None, 'RAW'))
                try:
                    win32print.StartPagePrinter(handle)
                    win32print.WritePrinter(handle, data)
                    win32print.EndPagePrinter(handle)
                finally:
                    win32print.EndDocPrinter(handle)
            finally:
                win32print.ClosePrinter(handle)
        except Exception as e:
            logger.error("Spooler printer %s failed: %s", destination.printer_name, e)
            return PrintResult(False, error=str(e))
        logger.info("Sent %d bytes to spooler printer %s", len(data), destination.printer_name)
        return PrintResult(True, bytes_sent=len(data))
