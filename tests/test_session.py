"""
Tests for the transfer session state machine.
"""
import io
import logging
import threading
import time
from unittest.mock import MagicMock

import pytest

from transfer_service.datalink import DataLinkClient
from transfer_service.errors import WritePermissionError
from transfer_service.models import FileInventory, SessionState
from transfer_service.mseed import MiniSeedReader
from transfer_service.scanner import FileScanner
from transfer_service.session import SessionConfig, TransferSession
from transfer_service.tracker import StateTracker

from conftest import RECORD_LENGTH, FakeTransport, build_records, closed_port


def make_session(inventory, transport, tracker=None, **config):
    config.setdefault("reconnect_delay", 0)
    return TransferSession(
        inventory, MiniSeedReader(), transport,
        tracker=tracker, config=SessionConfig(**config),
    )


def sent_bytes(transport):
    return b"".join(write[0] for write in transport.writes)


@pytest.fixture
def scenario_files(write_records):
    """Three input files of 10, 0 and 25 records."""
    return [
        write_records("file1.mseed", 10),
        write_records("file2.mseed", 0, station="EMPTY"),
        write_records("file3.mseed", 25, station="THIRD"),
    ]


def test_end_to_end_with_transport_failure(scenario_files, fake_transport, state_tracker):
    """Test that a send failure after 4 records reconnects and resumes exactly."""
    inventory = FileScanner().build_inventory([str(p) for p in scenario_files])
    transport = fake_transport(fail_writes={5})

    session = make_session(inventory, transport, tracker=state_tracker)
    summary = session.run()

    assert summary.exit_code == 0
    assert summary.all_sent
    assert summary.total_records == 35
    assert summary.total_bytes == 35 * RECORD_LENGTH
    assert transport.connects == 2
    assert transport.disconnects >= 1
    assert session.state is SessionState.TERMINATED

    # No duplicates and no gaps: exactly the contents of file 1 then file 3
    assert sent_bytes(transport) == scenario_files[0].read_bytes() + scenario_files[2].read_bytes()
    assert inventory[1].records_sent == 0

    lines = state_tracker.state_file.read_text().splitlines()
    assert [int(line.split("\t")[1]) for line in lines] == [10 * RECORD_LENGTH, 0, 25 * RECORD_LENGTH]


def test_state_saved_after_each_completed_file(scenario_files, fake_transport):
    inventory = FileScanner().build_inventory([str(p) for p in scenario_files])
    tracker = MagicMock(spec=StateTracker)

    make_session(inventory, fake_transport(), tracker=tracker).run()

    # file 1, file 3 and the final save; the empty file needs no transfer
    assert tracker.save.call_count == 3


@pytest.mark.parametrize("stop_after", [1, 4, 9])
def test_resume_matches_uninterrupted_run(write_records, fake_transport, tmp_state_file, stop_after):
    """Test that stopping after k records and restarting sends the file exactly once."""
    path = write_records("resume.mseed", 10)

    holder = {}
    first_transport = fake_transport(
        on_write=lambda n: holder["session"].request_stop() if n == stop_after else None)
    first_inventory = FileScanner().build_inventory([str(path)])
    holder["session"] = make_session(first_inventory, first_transport,
                                     tracker=StateTracker(tmp_state_file))
    first = holder["session"].run()

    assert first.exit_code == 0
    assert first.total_records == stop_after
    assert not first.all_sent

    second_inventory = FileScanner().build_inventory([str(path)])
    tracker = StateTracker(tmp_state_file)
    assert tracker.restore(second_inventory) == 1
    assert second_inventory[0].offset == stop_after * RECORD_LENGTH

    second_transport = fake_transport()
    second = make_session(second_inventory, second_transport, tracker=tracker).run()

    uninterrupted_transport = fake_transport()
    uninterrupted = make_session(
        FileScanner().build_inventory([str(path)]), uninterrupted_transport).run()

    assert first.total_records + second.total_records == uninterrupted.total_records == 10
    assert first.total_bytes + second.total_bytes == uninterrupted.total_bytes
    assert sent_bytes(first_transport) + sent_bytes(second_transport) == sent_bytes(uninterrupted_transport)
    assert second_inventory[0].offset == second_inventory[0].size
    assert second_inventory[0].records_sent == 10
    assert second.all_sent


def test_unrecognized_file_is_skipped(write_records, fake_transport, tmp_path):
    """Test that a file with no records at all is skipped without failing the session."""
    notes = tmp_path / "notes.txt"
    notes.write_text("plain text, not records\n" * 50)
    data = write_records("data.mseed", 3)
    inventory = FileScanner().build_inventory([str(notes), str(data)])
    transport = fake_transport()

    summary = make_session(inventory, transport).run()

    assert summary.exit_code == 0
    assert summary.all_sent
    assert inventory[0].skipped
    assert inventory[0].offset == inventory[0].size
    assert len(transport.writes) == 3


@pytest.mark.parametrize("tail", [b"x" * RECORD_LENGTH, build_records(1)[:200]])
def test_bad_data_after_progress_is_fatal(tmp_path, fake_transport, state_tracker, tail):
    """Test that garbage or a truncated record partway through a file stops the session."""
    path = tmp_path / "broken.mseed"
    path.write_bytes(build_records(2) + tail)
    inventory = FileScanner().build_inventory([str(path)])
    transport = fake_transport()

    summary = make_session(inventory, transport, tracker=state_tracker).run()

    assert summary.exit_code == 1
    assert summary.errors
    assert len(transport.writes) == 2
    assert inventory[0].offset == 2 * RECORD_LENGTH
    assert state_tracker.state_file.read_text().split("\t")[1] == str(2 * RECORD_LENGTH)


def test_connect_failures_are_retried(write_records, fake_transport):
    path = write_records("data.mseed", 2)
    transport = fake_transport(fail_connects=2)

    summary = make_session(FileScanner().build_inventory([str(path)]), transport).run()

    assert transport.connects == 3
    assert summary.exit_code == 0
    assert summary.all_sent


def test_quit_on_connect_error(write_records, fake_transport):
    path = write_records("data.mseed", 2)
    transport = fake_transport(fail_connects=1)

    summary = make_session(FileScanner().build_inventory([str(path)]), transport,
                           quit_on_error=True).run()

    assert summary.exit_code == 1
    assert transport.connects == 1
    assert transport.writes == []


def test_quit_on_send_error_keeps_acknowledged_offset(write_records, fake_transport, state_tracker):
    """Test that the failed record is not credited when quitting on error."""
    path = write_records("data.mseed", 5)
    inventory = FileScanner().build_inventory([str(path)])
    transport = fake_transport(fail_writes={3})

    summary = make_session(inventory, transport, tracker=state_tracker,
                           quit_on_error=True).run()

    assert summary.exit_code == 1
    assert inventory[0].offset == 2 * RECORD_LENGTH
    assert inventory[0].records_sent == 2


def test_missing_write_permission_is_fatal(write_records, fake_transport):
    path = write_records("data.mseed", 2)
    transport = fake_transport(connect_error=WritePermissionError("read only"))

    summary = make_session(FileScanner().build_inventory([str(path)]), transport).run()

    assert summary.exit_code == 1
    assert transport.connects == 1


def test_stop_during_reconnect_sleep(write_records, fake_transport):
    """Test that a stop signal breaks the reconnect delay."""
    path = write_records("data.mseed", 2)
    transport = fake_transport(fail_connects=1)
    holder = {}

    def interrupted_sleep(seconds):
        holder["session"].request_stop()
        return False

    session = TransferSession(
        FileScanner().build_inventory([str(path)]), MiniSeedReader(), transport,
        config=SessionConfig(reconnect_delay=3600), sleep=interrupted_sleep,
    )
    holder["session"] = session
    summary = session.run()

    assert summary.exit_code == 0
    assert transport.connects == 1
    assert not summary.all_sent


def test_stop_before_run_sends_nothing(write_records, fake_transport):
    path = write_records("data.mseed", 2)
    transport = fake_transport()
    session = make_session(FileScanner().build_inventory([str(path)]), transport)
    session.request_stop()

    summary = session.run()

    assert summary.exit_code == 0
    assert transport.writes == []


def test_already_sent_inventory_does_not_connect(write_records, fake_transport):
    path = write_records("data.mseed", 2)
    inventory = FileScanner().build_inventory([str(path)])
    inventory[0].offset = inventory[0].size
    transport = fake_transport()

    summary = make_session(inventory, transport).run()

    assert summary.exit_code == 0
    assert summary.all_sent
    assert transport.connects == 0


def test_pretend_mode_reads_without_sending(write_records, fake_transport, state_tracker):
    path = write_records("data.mseed", 4)
    transport = fake_transport()

    summary = make_session(FileScanner().build_inventory([str(path)]), transport,
                           tracker=state_tracker, pretend=True).run()

    assert summary.total_records == 4
    assert transport.connects == 0
    assert transport.writes == []
    assert not state_tracker.state_file.exists()


def test_selection_filter_skips_records(write_records, fake_transport):
    """Test that unselected records are consumed but not sent or counted."""
    keep = write_records("keep.mseed", 3, station="KEEP")
    drop = write_records("drop.mseed", 2, station="DROP")
    inventory = FileScanner().build_inventory([str(keep), str(drop)])
    transport = fake_transport()
    selection = MagicMock()
    selection.matches.side_effect = lambda stream_id, start, end: "_KEEP_" in stream_id

    session = TransferSession(inventory, MiniSeedReader(), transport,
                              config=SessionConfig(reconnect_delay=0), selection=selection)
    summary = session.run()

    assert [w[1] for w in transport.writes] == ["XX_KEEP_00_BHZ/MSEED"] * 3
    assert summary.all_sent
    assert inventory[1].records_sent == 0
    assert inventory[1].offset == inventory[1].size


def test_ack_setting_is_passed_to_transport(write_records, fake_transport):
    path = write_records("data.mseed", 1)
    transport = fake_transport()
    make_session(FileScanner().build_inventory([str(path)]), transport, require_ack=False).run()
    assert transport.writes[0][4] is False


def test_status_request_dumps_inventory(write_records, fake_transport):
    path = write_records("data.mseed", 1)
    stream = io.StringIO()
    session = TransferSession(FileScanner().build_inventory([str(path)]), MiniSeedReader(),
                              fake_transport(), status_stream=stream,
                              config=SessionConfig(reconnect_delay=0))
    session.request_status()
    session.run()

    output = stream.getvalue()
    assert output.startswith("Filename\tOffset\tSize\tBytes\tRecords")
    assert str(path) in output


def test_session_throttles_to_max_rate(write_records, fake_transport):
    """Test that the session average stays at the configured bitrate."""
    path = write_records("data.mseed", 8)
    now = {"t": 0.0}

    def clock():
        return now["t"]

    def sleep(seconds):
        now["t"] += seconds
        return True

    max_rate = 8 * RECORD_LENGTH  # one record per second
    session = TransferSession(FileScanner().build_inventory([str(path)]), MiniSeedReader(),
                              fake_transport(), config=SessionConfig(max_rate=max_rate),
                              clock=clock, sleep=sleep)
    summary = session.run()

    assert summary.total_records == 8
    assert now["t"] == pytest.approx(8.0)
    assert summary.total_bytes * 8 / now["t"] <= max_rate + 1e-6


def test_empty_inventory_terminates_immediately(fake_transport):
    summary = make_session(FileInventory(), fake_transport()).run()
    assert summary.exit_code == 0
    assert summary.all_sent


def test_stop_interrupts_connect_retries(write_records):
    """Test that a stop request ends a connect that is backing off between attempts."""
    path = write_records("data.mseed", 2)
    transport = DataLinkClient(f"127.0.0.1:{closed_port()}", timeout=1.0, connect_attempts=5,
                               retry_wait_min=10, retry_wait_max=10)
    session = make_session(FileScanner().build_inventory([str(path)]), transport,
                           reconnect_delay=3600)

    timer = threading.Timer(0.2, session.request_stop)
    timer.start()
    started = time.monotonic()
    try:
        summary = session.run()
    finally:
        timer.cancel()

    assert time.monotonic() - started < 5
    assert summary.exit_code == 0
    assert summary.total_records == 0
    assert not summary.all_sent


def test_periodic_transfer_statistics(write_records, caplog):
    """Test that progress is logged every interval while a file streams."""
    path = write_records("data.mseed", 6)
    now = {"t": 0.0}

    def advance(count):
        now["t"] += 1.0

    session = TransferSession(
        FileScanner().build_inventory([str(path)]), MiniSeedReader(),
        FakeTransport(on_write=advance),
        config=SessionConfig(reconnect_delay=0, iostats_interval=2),
        clock=lambda: now["t"],
    )
    with caplog.at_level(logging.INFO, logger="transfer_service.session"):
        session.run()

    progress = [r.getMessage() for r in caplog.records if "% (" in r.getMessage()]
    assert len(progress) == 3
    assert "sent 33%" in progress[0]
    assert "sent 66%" in progress[1]
    assert "sent 100%" in progress[2]
    assert "sent in 6.0 seconds" in caplog.text


def test_stop_during_throttle_sleep(write_records, fake_transport):
    """Test that a stop while throttled sends nothing more and keeps the offset."""
    path = write_records("data.mseed", 5)
    inventory = FileScanner().build_inventory([str(path)])
    transport = fake_transport()
    now = {"t": 0.0}
    holder = {"sleeps": 0}

    def sleep(seconds):
        holder["sleeps"] += 1
        if holder["sleeps"] == 3:
            holder["session"].request_stop()
            return False
        now["t"] += seconds
        return True

    session = TransferSession(inventory, MiniSeedReader(), transport,
                              config=SessionConfig(max_rate=8 * RECORD_LENGTH),
                              clock=lambda: now["t"], sleep=sleep)
    holder["session"] = session
    summary = session.run()

    assert summary.exit_code == 0
    assert len(transport.writes) == 2
    assert inventory[0].offset == 2 * RECORD_LENGTH
    assert not summary.all_sent
