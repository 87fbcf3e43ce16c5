"""
Module for driving the transfer of an inventory to the collector.

The session is a small state machine::

    IDLE -> CONNECTING -> STREAMING -> DISCONNECTING -> RECONNECTING -> CONNECTING
                                   \\-> TERMINATED

Progress on a file only advances after its record has been sent, so the
state saved after each completed file (and once more at termination) never
claims bytes the collector has not received.
"""
import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TextIO

from .coverage import CoverageTracker
from .errors import CorruptRecordError, NotRecognizedError, StateError, TransportError, WritePermissionError
from .models import FileEntry, FileInventory, SessionState, TransferSummary
from .selection import SelectionFilter
from .throttle import RateThrottle
from .tracker import StateTracker

logger = logging.getLogger(__name__)


@dataclass
class SessionConfig:
    """Behavior settings of a transfer session."""
    reconnect_delay: float = 60.0
    quit_on_error: bool = False
    max_rate: Optional[float] = None
    require_ack: bool = True
    pretend: bool = False
    iostats_interval: Optional[float] = None


class TransferSession:
    """Sends every file of an inventory, reconnecting on transport errors."""

    def __init__(self, inventory: FileInventory, reader, transport,
                 tracker: Optional[StateTracker] = None,
                 config: Optional[SessionConfig] = None,
                 selection: Optional[SelectionFilter] = None,
                 coverage: Optional[CoverageTracker] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], bool]] = None,
                 status_stream: Optional[TextIO] = None):
        """Initialize the transfer session.

        Args:
            inventory: Files to send, with any restored progress applied
            reader: Record reader providing ``read_record(path, offset, limit)``
                and ``close()``
            transport: Connection providing ``connect()``, ``write(...)``,
                ``disconnect()`` and ``interrupt()``
            tracker: State persistence, None to disable saving
            config: Session settings
            selection: Optional filter deciding which records are sent
            coverage: Optional tracker of the time ranges sent
            clock: Monotonic clock returning seconds
            sleep: Sleep function returning False when interrupted; defaults
                to waiting on the stop signal
            status_stream: Where status dumps are written, stderr by default
        """
        self.inventory = inventory
        self.reader = reader
        self.transport = transport
        self.tracker = tracker or StateTracker(None)
        self.config = config or SessionConfig()
        self.selection = selection
        self.coverage = coverage
        self.throttle = RateThrottle(self.config.max_rate, clock=clock)
        self.status_stream = status_stream

        self.state = SessionState.IDLE
        self.total_bytes = 0
        self.total_records = 0
        self.total_files = 0
        self.exit_code = 0
        self.errors = []

        self._clock = clock
        self._sleep_fn = sleep
        self._cursor = 0
        self._stop_event = threading.Event()
        self._status_event = threading.Event()
        self._handlers = {
            SessionState.IDLE: self._idle,
            SessionState.CONNECTING: self._connecting,
            SessionState.STREAMING: self._streaming,
            SessionState.DISCONNECTING: self._disconnecting,
            SessionState.RECONNECTING: self._reconnecting,
        }

    def request_stop(self) -> None:
        """Ask the session to terminate at the next loop boundary.

        A connect in progress is interrupted as well.
        """
        self._stop_event.set()
        self.transport.interrupt()

    def request_status(self) -> None:
        """Ask the session to dump the inventory state at the next loop boundary."""
        self._status_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def current_entry(self) -> Optional[FileEntry]:
        if self._cursor < len(self.inventory):
            return self.inventory[self._cursor]
        return None

    def run(self) -> TransferSummary:
        """Run the state machine until every file is sent or a stop condition.

        Returns:
            TransferSummary of the session
        """
        started = self._clock()
        self.throttle.start()

        while self.state is not SessionState.TERMINATED:
            next_state = self._handlers[self.state]()
            if next_state is not self.state:
                logger.debug(f"Session state {self.state.value} -> {next_state.value}")
            self.state = next_state

        return self._finish(started)

    def _sleep(self, seconds: float) -> bool:
        if self._sleep_fn is not None:
            return self._sleep_fn(seconds) and not self.stop_requested
        return not self._stop_event.wait(seconds)

    def _fatal(self, message: str) -> SessionState:
        logger.error(message)
        self.errors.append(message)
        self.exit_code = 1
        return SessionState.TERMINATED

    def _check_status(self) -> None:
        if not self._status_event.is_set():
            return
        self._status_event.clear()
        stream = self.status_stream or sys.stderr
        stream.write(self.inventory.format_table() + "\n")
        stream.flush()

    def _has_pending(self) -> bool:
        return any(not entry.is_complete for entry in self.inventory)

    def _idle(self) -> SessionState:
        if not self._has_pending():
            logger.info("All input files have already been sent")
            return SessionState.TERMINATED
        return SessionState.CONNECTING

    def _connecting(self) -> SessionState:
        if self.stop_requested:
            return SessionState.TERMINATED
        if self.config.pretend:
            return SessionState.STREAMING

        try:
            self.transport.connect()
        except WritePermissionError as e:
            return self._fatal(f"ERROR {e}")
        except TransportError as e:
            if self.stop_requested:
                logger.info(f"Connecting to {self.transport.address} abandoned")
                return SessionState.TERMINATED
            logger.error(f"Error connecting to server: {e}")
            if self.config.quit_on_error:
                return self._fatal("Quitting on connection error")
            return SessionState.RECONNECTING

        logger.info(f"Connected to {self.transport.address}")
        return SessionState.STREAMING

    def _streaming(self) -> SessionState:
        while True:
            self._check_status()
            if self.stop_requested:
                return SessionState.TERMINATED

            entry = self.current_entry
            if entry is None:
                return SessionState.TERMINATED

            if entry.is_complete:
                self._cursor += 1
                continue

            next_state = self._stream_file(entry)
            if next_state is not None:
                return next_state

            self._cursor += 1

    def _stream_file(self, entry: FileEntry) -> Optional[SessionState]:
        """Send records of one file until it is complete.

        Returns:
            The next session state if streaming must stop, None when the file
            has been finished and the next file can be processed
        """
        logger.debug(f"Sending records from file {entry.path}")
        file_start = self._clock()
        file_bytes = 0
        file_records = 0
        interval = self.config.iostats_interval
        next_stats = file_start + interval if interval else None

        while not entry.is_complete:
            self._check_status()
            if self.stop_requested:
                return SessionState.TERMINATED

            try:
                record = self.reader.read_record(entry.path, entry.offset, limit=entry.size)
            except NotRecognizedError as e:
                if entry.offset == 0:
                    logger.warning(f"{entry.path}: no records found, skipping")
                    entry.mark_skipped()
                    break
                return self._fatal(f"Error reading {entry.path}: {e}")
            except CorruptRecordError as e:
                return self._fatal(f"Error reading {entry.path}: {e}")
            except OSError as e:
                return self._fatal(f"Error reading {entry.path}: {e}")

            if record is None:
                logger.warning(
                    f"{entry.path}: end of data at offset {entry.offset}, "
                    f"expected {entry.size} bytes"
                )
                return None

            if self.selection and not self.selection.matches(
                    record.stream_id, record.start_time, record.end_time):
                logger.debug(f"Skipping {record.stream_id}, not selected")
                entry.advance(record.length)
                continue

            if not self.throttle.wait(self.total_bytes + record.length, self._sleep):
                return SessionState.TERMINATED

            if not self.config.pretend:
                logger.debug(f"Sending {record.stream_id}")
                try:
                    self.transport.write(
                        record.data, record.stream_id,
                        record.start_time, record.end_time,
                        ack=self.config.require_ack
                    )
                except TransportError as e:
                    logger.error(f"Error sending record: {e}")
                    return SessionState.DISCONNECTING

            entry.advance(record.length)
            entry.bytes_sent += record.length
            entry.records_sent += 1
            file_bytes += record.length
            file_records += 1
            self.total_bytes += record.length
            self.total_records += 1

            if self.coverage is not None:
                self.coverage.add(record)

            if next_stats is not None and self._clock() >= next_stats:
                self._log_rate(entry, file_bytes, file_records, file_start, progress=True)
                next_stats += interval

        if entry.skipped:
            logger.debug(f"{entry.path}: marked as consumed")
        else:
            logger.info(f"{entry.path}: sent {file_bytes} bytes in {file_records} records")
            if interval:
                self._log_rate(entry, file_bytes, file_records, file_start, progress=False)

        self.total_files += 1
        self._save_state()
        return None

    def _log_rate(self, entry: FileEntry, file_bytes: int, file_records: int,
                  file_start: float, progress: bool) -> None:
        elapsed = self._clock() - file_start
        bps = file_bytes / elapsed if elapsed > 0 else 0.0
        rps = file_records / elapsed if elapsed > 0 else 0.0
        if progress:
            percent = int(100 * entry.offset / entry.size) if entry.size else 100
            logger.info(
                f"{entry.path}: sent {percent}% "
                f"({bps:.1f} bytes/second, {rps:.1f} records/second)"
            )
        else:
            logger.info(
                f"{entry.path}: sent in {elapsed:.1f} seconds "
                f"({bps:.1f} bytes/second, {rps:.1f} records/second)"
            )

    def _disconnecting(self) -> SessionState:
        self.transport.disconnect()
        if self.config.quit_on_error:
            return self._fatal("Quitting on connection error")
        return SessionState.RECONNECTING

    def _reconnecting(self) -> SessionState:
        if self.stop_requested:
            return SessionState.TERMINATED
        logger.info(f"Reconnecting in {self.config.reconnect_delay:g} seconds")
        if not self._sleep(self.config.reconnect_delay):
            return SessionState.TERMINATED
        return SessionState.CONNECTING

    def _save_state(self) -> bool:
        if self.config.pretend:
            return True
        try:
            self.tracker.save(self.inventory)
        except StateError as e:
            logger.error(str(e))
            self.errors.append(str(e))
            return False
        return True

    def _finish(self, started: float) -> TransferSummary:
        self.reader.close()
        if not self.config.pretend:
            self.transport.disconnect()
        if not self._save_state():
            self.exit_code = 1

        elapsed = self._clock() - started
        summary = TransferSummary(
            total_bytes=self.total_bytes,
            total_records=self.total_records,
            total_files=self.total_files,
            inventory_files=len(self.inventory),
            elapsed=elapsed,
            all_sent=self.inventory.all_sent,
            exit_code=self.exit_code,
            errors=list(self.errors),
        )

        logger.info(
            f"Time elapsed: {elapsed:.1f} seconds "
            f"({summary.bytes_per_second:.1f} bytes/second, "
            f"{summary.records_per_second:.1f} records/second)"
        )
        logger.info(
            f"Sent {summary.total_bytes} bytes in {summary.total_records} records "
            f"from {summary.total_files} file(s)"
        )
        return summary
