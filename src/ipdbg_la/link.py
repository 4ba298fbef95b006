"""Byte-stream links to an IPDBG host: TCP socket or serial port.

Every link offers the same small surface used by the protocol layer:
a non-blocking readiness query, a non-blocking read that may return
nothing, and a write that reports how many bytes went out.
"""

import logging
import select
import socket
import time
from typing import Protocol

import serial

from .errors import LinkError, ReadTimeout

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4242
DEFAULT_BAUD = 115200
RECEIVE_TIMEOUT = 2.0  # seconds
POLL_INTERVAL = 0.001


class ByteLink(Protocol):
    def is_readable(self) -> bool: ...

    def read_nonblocking(self, max_len: int) -> bytes: ...

    def write(self, data: bytes) -> int: ...

    def close(self) -> None: ...


class TcpLink:
    """TCP connection to an IPDBG JTAG host."""

    def __init__(self, sock: socket.socket, host: str = "", port: int = 0):
        self._sock = sock
        self.host = host
        self.port = port

    @classmethod
    def connect(cls, host: str, port: int = DEFAULT_PORT,
                timeout: float = 5.0) -> "TcpLink":
        """Resolve ``host`` and connect to the first address that accepts."""
        try:
            results = socket.getaddrinfo(host, port, socket.AF_UNSPEC,
                                         socket.SOCK_STREAM, socket.IPPROTO_TCP)
        except socket.gaierror as e:
            raise LinkError(f"Address lookup failed: {host}:{port}: {e}") from e

        last_error: OSError | None = None
        for family, socktype, proto, _, addr in results:
            sock = socket.socket(family, socktype, proto)
            sock.settimeout(timeout)
            try:
                sock.connect(addr)
            except OSError as e:
                last_error = e
                sock.close()
                continue
            sock.setblocking(False)
            logger.info("Connected to %s:%d", host, port)
            return cls(sock, host, port)

        raise LinkError(f"Failed to connect to {host}:{port}: {last_error}")

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def _ensure_open(self) -> socket.socket:
        if self._sock is None:
            raise LinkError(f"Link to {self.host}:{self.port} is closed")
        return self._sock

    def is_readable(self) -> bool:
        sock = self._ensure_open()
        try:
            readable, _, _ = select.select([sock], [], [], 0)
        except (OSError, ValueError) as e:
            logger.error("Readiness check failed: %s", e)
            return False
        return bool(readable)

    def read_nonblocking(self, max_len: int) -> bytes:
        sock = self._ensure_open()
        if not self.is_readable():
            return b""
        try:
            data = sock.recv(max_len)
        except BlockingIOError:
            return b""
        except OSError as e:
            raise LinkError(f"Receive error: {e}") from e
        if not data:
            raise LinkError(f"Connection to {self.host}:{self.port} closed by peer")
        return data

    def write(self, data: bytes) -> int:
        sock = self._ensure_open()
        try:
            sent = sock.send(data)
        except BlockingIOError:
            sent = 0
        except OSError as e:
            raise LinkError(f"Send error: {e}") from e
        if sent < len(data):
            logger.debug("Only sent %d/%d bytes of data", sent, len(data))
        return sent

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.shutdown(socket.SHUT_WR)
        except OSError:
            logger.debug("Shutdown of %s:%d failed", self.host, self.port)
        self._sock.close()
        self._sock = None


class SerialLink:
    """Serial-port link, for IPDBG hosts reachable over a UART bridge."""

    def __init__(self, port: str, baud: int = DEFAULT_BAUD):
        self.port = port
        self.baud = baud
        self._ser: serial.Serial | None = None

    def open(self) -> None:
        if self._ser and self._ser.is_open:
            raise RuntimeError(f"Serial link already open on {self.port}")
        try:
            self._ser = serial.Serial(port=self.port, baudrate=self.baud, timeout=0)
        except serial.SerialException as e:
            raise LinkError(f"Failed to open {self.port}: {e}") from e
        self._ser.reset_input_buffer()

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def _ensure_open(self) -> serial.Serial:
        ser = self._ser
        if ser is None or not ser.is_open:
            raise LinkError(f"Serial link on {self.port} is not open")
        return ser

    def is_readable(self) -> bool:
        ser = self._ensure_open()
        try:
            return ser.in_waiting > 0
        except (serial.SerialException, OSError) as e:
            logger.error("Readiness check failed: %s", e)
            return False

    def read_nonblocking(self, max_len: int) -> bytes:
        ser = self._ensure_open()
        try:
            waiting = ser.in_waiting
            if not waiting:
                return b""
            return ser.read(min(max_len, waiting))
        except (serial.SerialException, OSError) as e:
            raise LinkError(f"Receive error: {e}") from e

    def write(self, data: bytes) -> int:
        ser = self._ensure_open()
        try:
            sent = ser.write(data)
        except (serial.SerialException, OSError) as e:
            raise LinkError(f"Send error: {e}") from e
        return sent or 0

    def close(self) -> None:
        if self._ser and self._ser.is_open:
            self._ser.close()
        self._ser = None


def open_link(host: str | None = None, port: int = DEFAULT_PORT,
              serial_port: str | None = None, baud: int = DEFAULT_BAUD) -> ByteLink:
    """Open a serial link when ``serial_port`` is given, otherwise TCP."""
    if serial_port:
        link = SerialLink(serial_port, baud)
        link.open()
        return link
    if not host:
        raise ValueError("Either host or serial_port is required")
    return TcpLink.connect(host, port)


def receive_exact(link: ByteLink, size: int, timeout: float = RECEIVE_TIMEOUT) -> bytes:
    """Block until ``size`` bytes arrived or ``timeout`` seconds passed.

    Used only for one-shot handshake queries. Raises ReadTimeout with the
    partial data when the deadline passes first.
    """
    received = b""
    deadline = time.monotonic() + timeout
    while len(received) < size:
        chunk = link.read_nonblocking(size - len(received))
        if chunk:
            received += chunk
            continue
        if time.monotonic() >= deadline:
            raise ReadTimeout(
                f"Timeout after {timeout}s: got {len(received)}/{size} bytes",
                received)
        time.sleep(POLL_INTERVAL)
    return received
