"""
Module for sending records to a DataLink server.

DataLink packets are framed as ``b"DL"``, a one byte header length, an ASCII
header and an optional binary payload.
"""
import getpass
import logging
import os
import platform
import socket
import threading
from typing import Optional, Tuple

from tenacity import (
    Retrying,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
    retry_if_exception_type,
    before_log,
    after_log
)

from .errors import TransportError, WritePermissionError

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 16000
PREAMBLE = b"DL"
MAX_HEADER_LENGTH = 255


def parse_address(address: str) -> Tuple[str, int]:
    """Split a ``[host][:port]`` server address.

    Args:
        address: Address as given on the command line

    Returns:
        Tuple of host and port, with defaults filled in

    Raises:
        ValueError: If the port is not a valid number
    """
    host, sep, port = address.rpartition(":")
    if not sep:
        host, port = address, ""
    host = host or DEFAULT_HOST
    if not port:
        return host, DEFAULT_PORT
    try:
        number = int(port)
    except ValueError:
        raise ValueError(f"Invalid port in server address: {address}") from None
    if not 0 < number < 65536:
        raise ValueError(f"Port out of range in server address: {address}")
    return host, number


def default_client_id(program: str = "transfer-service") -> str:
    """Build a client identifier of the form program:user:pid:architecture."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{program}:{user}:{os.getpid()}:{platform.system()}-{platform.machine()}"


class DataLinkClient:
    """A connection to a DataLink server used to write records."""

    def __init__(self, address: str, client_id: Optional[str] = None,
                 timeout: float = 60.0, connect_attempts: int = 3,
                 retry_wait_min: float = 1.0, retry_wait_max: float = 4.0):
        """Initialize the DataLink client.

        Args:
            address: Server address as ``[host][:port]``
            client_id: Identifier sent to the server on connect
            timeout: Socket timeout in seconds
            connect_attempts: TCP connection attempts per connect() call
            retry_wait_min: Minimum wait between connection attempts
            retry_wait_max: Maximum wait between connection attempts
        """
        self.address = address
        self.host, self.port = parse_address(address)
        self.client_id = client_id or default_client_id()
        self.timeout = timeout
        self.server_id: Optional[str] = None
        self.capabilities: Tuple[str, ...] = ()
        self._sock: Optional[socket.socket] = None
        self._interrupted = threading.Event()
        # Backoff waits on the interrupt event so interrupt() ends them early
        self._retrying = Retrying(
            retry=retry_if_exception_type(OSError),
            stop=(stop_after_attempt(max(1, connect_attempts))
                  | stop_when_event_set(self._interrupted)),
            wait=wait_exponential(multiplier=1, min=retry_wait_min, max=retry_wait_max),
            before=before_log(logger, logging.DEBUG),
            after=after_log(logger, logging.DEBUG),
            sleep=self._interrupted.wait,
            reraise=True
        )

    @property
    def connected(self) -> bool:
        return self._sock is not None

    @property
    def write_permission(self) -> bool:
        return "WRITE" in self.capabilities

    def interrupt(self) -> None:
        """Abandon connection attempts, now and in later connect() calls."""
        self._interrupted.set()

    def _open_socket(self) -> socket.socket:
        if self._interrupted.is_set():
            raise TransportError(f"Connection to {self.address} interrupted")
        sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        sock.settimeout(self.timeout)
        return sock

    def connect(self) -> None:
        """Connect and exchange identification with the server.

        Raises:
            TransportError: If the connection or ID exchange fails, or
                connecting was interrupted
            WritePermissionError: If the server does not grant write access
        """
        if self._sock is not None:
            return

        try:
            self._sock = self._retrying(self._open_socket)
        except OSError as e:
            raise TransportError(f"Error connecting to {self.address}: {e}") from e

        try:
            self._send_packet(f"ID {self.client_id}")
            header, _ = self._recv_packet()
        except TransportError:
            self.disconnect()
            raise

        if not header.startswith("ID "):
            self.disconnect()
            raise TransportError(f"Unexpected ID response from {self.address}: {header}")

        server, _, capabilities = header[3:].partition("::")
        self.server_id = server.strip()
        self.capabilities = tuple(capabilities.split())
        logger.debug(f"Server {self.server_id} capabilities: {' '.join(self.capabilities)}")

        if not self.write_permission:
            self.disconnect()
            raise WritePermissionError(f"Write permission not granted for {self.address}")

    def write(self, data: bytes, stream_id: str, start_time: int, end_time: int,
              ack: bool = True) -> None:
        """Send one record to the server.

        Args:
            data: Record bytes
            stream_id: Stream identifier
            start_time: Record start in microseconds since the epoch
            end_time: Record end in microseconds since the epoch
            ack: Whether to request and wait for an acknowledgement

        Raises:
            TransportError: If the record could not be sent or was rejected
        """
        if self._sock is None:
            raise TransportError(f"Not connected to {self.address}")

        flag = "A" if ack else "N"
        self._send_packet(
            f"WRITE {stream_id} {start_time} {end_time} {flag} {len(data)}", data)

        if not ack:
            return

        header, payload = self._recv_packet()
        fields = header.split()
        if fields and fields[0] == "OK":
            return
        if fields and fields[0] == "ERROR":
            message = payload.decode("utf-8", errors="replace")
            raise TransportError(f"Server rejected {stream_id}: {message}")
        raise TransportError(f"Unexpected response to WRITE: {header}")

    def disconnect(self) -> None:
        """Close the connection, ignoring errors."""
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Error closing connection to {self.address}: {e}")
        finally:
            self._sock = None

    def _send_packet(self, header: str, data: bytes = b"") -> None:
        encoded = header.encode("ascii")
        if len(encoded) > MAX_HEADER_LENGTH:
            raise TransportError(f"DataLink header too long ({len(encoded)} bytes)")
        try:
            self._sock.sendall(PREAMBLE + bytes([len(encoded)]) + encoded + data)
        except OSError as e:
            raise TransportError(f"Error sending to {self.address}: {e}") from e

    def _recv_exact(self, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining > 0:
            try:
                chunk = self._sock.recv(remaining)
            except OSError as e:
                raise TransportError(f"Error receiving from {self.address}: {e}") from e
            if not chunk:
                raise TransportError(f"Connection closed by {self.address}")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def _recv_packet(self) -> Tuple[str, bytes]:
        preamble = self._recv_exact(3)
        if preamble[:2] != PREAMBLE:
            raise TransportError(f"Invalid packet preamble from {self.address}")
        header = self._recv_exact(preamble[2]).decode("ascii", errors="replace")

        # OK and ERROR replies carry a message whose size is the last field
        payload = b""
        fields = header.split()
        if fields and fields[0] in ("OK", "ERROR") and len(fields) >= 3:
            try:
                size = int(fields[2])
            except ValueError:
                raise TransportError(f"Invalid reply from {self.address}: {header}") from None
            if size > 0:
                payload = self._recv_exact(size)
        return header, payload
