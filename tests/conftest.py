"""
Test fixtures for the transfer service.
"""
import socket
import struct
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import pytest

from transfer_service.errors import TransportError
from transfer_service.mseed import FIXED_HEADER_FORMAT
from transfer_service.models import FileInventory
from transfer_service.tracker import StateTracker

RECORD_LENGTH = 512
SAMPLES_PER_RECORD = 100
SAMPLE_RATE = 20.0


def build_record(network: str = "XX", station: str = "TEST", location: str = "00",
                 channel: str = "BHZ", start: datetime = datetime(2020, 1, 1),
                 sample_count: int = SAMPLES_PER_RECORD, rate_factor: int = 20,
                 rate_multiplier: int = 1, record_length: int = RECORD_LENGTH,
                 byte_order: str = ">", sequence: int = 1,
                 blockette_1000: bool = True, time_correction: int = 0,
                 activity_flags: int = 0) -> bytes:
    """Build a Mini-SEED 2.x record with zeroed sample data."""
    header = struct.pack(
        byte_order + FIXED_HEADER_FORMAT,
        f"{sequence:06d}".encode(), b"D", b" ",
        station.ljust(5).encode(), location.ljust(2).encode(),
        channel.ljust(3).encode(), network.ljust(2).encode(),
        start.year, start.timetuple().tm_yday, start.hour, start.minute,
        start.second, 0, start.microsecond // 100,
        sample_count, rate_factor, rate_multiplier,
        activity_flags, 0, 0, 1 if blockette_1000 else 0,
        time_correction, 64, 48 if blockette_1000 else 0,
    )
    if blockette_1000:
        exponent = record_length.bit_length() - 1
        header += struct.pack(byte_order + "HHBBBB", 1000, 0, 10, 1, exponent, 0)
    return header + b"\x00" * (record_length - len(header))


def build_records(count: int, start: datetime = datetime(2020, 1, 1), **kwargs) -> bytes:
    """Build ``count`` consecutive records of one stream."""
    span = timedelta(seconds=SAMPLES_PER_RECORD / SAMPLE_RATE)
    return b"".join(
        build_record(start=start + i * span, sequence=i + 1, **kwargs)
        for i in range(count)
    )


def closed_port() -> int:
    """Return a local port with nothing listening on it."""
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class FakeTransport:
    """In-memory transport recording what was written.

    Args:
        fail_writes: 1-based write attempt numbers that raise TransportError
        fail_connects: Number of initial connect attempts that fail
        on_write: Callback invoked with the number of successful writes
    """

    def __init__(self, fail_writes=(), fail_connects: int = 0, on_write=None,
                 connect_error: Optional[Exception] = None):
        self.address = "fake:16000"
        self.writes: List[tuple] = []
        self.connects = 0
        self.disconnects = 0
        self.write_attempts = 0
        self.fail_writes = set(fail_writes)
        self.fail_connects = fail_connects
        self.on_write = on_write
        self.connect_error = connect_error
        self.interrupted = False

    def connect(self) -> None:
        self.connects += 1
        if self.connect_error is not None:
            raise self.connect_error
        if self.connects <= self.fail_connects:
            raise TransportError("connection refused")

    def write(self, data, stream_id, start_time, end_time, ack=True) -> None:
        self.write_attempts += 1
        if self.write_attempts in self.fail_writes:
            raise TransportError("connection reset")
        self.writes.append((data, stream_id, start_time, end_time, ack))
        if self.on_write:
            self.on_write(len(self.writes))

    def disconnect(self) -> None:
        self.disconnects += 1

    def interrupt(self) -> None:
        self.interrupted = True


class DataLinkServer(threading.Thread):
    """Minimal single-connection-at-a-time DataLink server for tests."""

    def __init__(self, capabilities: str = "DLPROTO:1.0 PACKETSIZE:512 WRITE",
                 reject_streams=()):
        super().__init__(daemon=True)
        self.capabilities = capabilities
        self.reject_streams = set(reject_streams)
        self.records: List[tuple] = []
        self.client_ids: List[str] = []
        self._stop_event = threading.Event()
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(5)
        self.sock.settimeout(0.1)

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.sock.getsockname()[1]}"

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            with conn:
                self._serve(conn)

    def stop(self) -> None:
        self._stop_event.set()
        self.join(timeout=5)
        self.sock.close()

    def _recv_exact(self, conn, size: int) -> Optional[bytes]:
        data = b""
        while len(data) < size:
            chunk = conn.recv(size - len(data))
            if not chunk:
                return None
            data += chunk
        return data

    def _send(self, conn, header: str, payload: bytes = b"") -> None:
        encoded = header.encode()
        conn.sendall(b"DL" + bytes([len(encoded)]) + encoded + payload)

    def _serve(self, conn) -> None:
        conn.settimeout(5)
        while not self._stop_event.is_set():
            try:
                preamble = self._recv_exact(conn, 3)
                if preamble is None:
                    return
                header = self._recv_exact(conn, preamble[2]).decode()
            except OSError:
                return

            if header.startswith("ID "):
                self.client_ids.append(header[3:])
                self._send(conn, f"ID DataLink 2008.000 :: {self.capabilities}")
            elif header.startswith("WRITE "):
                _, stream, start, end, flag, size = header.split()
                data = self._recv_exact(conn, int(size))
                if stream in self.reject_streams:
                    message = b"stream rejected"
                    if flag == "A":
                        self._send(conn, f"ERROR 0 {len(message)}", message)
                    continue
                self.records.append((stream, int(start), int(end), data))
                if flag == "A":
                    self._send(conn, "OK 0 0")


@pytest.fixture
def record_bytes():
    """Factory building Mini-SEED records."""
    return build_records


@pytest.fixture
def write_records(tmp_path):
    """Create a file containing ``count`` Mini-SEED records."""
    def _write(name: str, count: int, **kwargs) -> Path:
        path = tmp_path / "data" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(build_records(count, **kwargs))
        return path
    return _write


@pytest.fixture
def fake_transport():
    """Factory creating fake transports."""
    return FakeTransport


@pytest.fixture
def tmp_state_file(tmp_path):
    """Path of a state file that does not exist yet."""
    return tmp_path / "transfer.state"


@pytest.fixture
def state_tracker(tmp_state_file):
    """Create a test state tracker."""
    return StateTracker(tmp_state_file)


@pytest.fixture
def small_inventory(tmp_path):
    """Inventory of three plain files of known size."""
    inventory = FileInventory()
    for name, size in (("a.mseed", 1024), ("b.mseed", 0), ("c.mseed", 2048)):
        path = tmp_path / name
        path.write_bytes(b"\x00" * size)
        inventory.add(str(path), size)
    return inventory


@pytest.fixture
def datalink_server():
    """Run a DataLink server in a background thread."""
    server = DataLinkServer()
    server.start()
    yield server
    server.stop()
