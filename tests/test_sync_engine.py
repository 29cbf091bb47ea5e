"""
Tests for the remote-to-local sync engine.
"""

import os
import threading
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from enquiry_sync.core.sync_engine import (
    TEMP_SUFFIX,
    ProgressHeartbeat,
    SyncEngine,
    SyncStats,
    TransferOperation,
    TransferProgress,
)
from enquiry_sync.exceptions import ConfigurationError, LocalStorageError, TransferCancelledError

from tests.fakes import (
    FakeTransferClient,
    fail_after_partial_write,
    hang_until_cancelled,
    write_nothing,
)

REMOTE_DIR = "/Database_Download"


def make_engine(client, **kwargs):
    options = {"file_extension": ".bak", "transfer_timeout": 5, "heartbeat_interval": 1}
    options.update(kwargs)
    return SyncEngine(client, **options)


class TestSynchronize:
    """Test cases for SyncEngine.synchronize."""

    def test_downloads_new_and_skips_existing(self, tmp_path):
        """Test that a file already present at the remote size is skipped."""
        client = FakeTransferClient({"A.bak": b"a" * 100, "B.bak": b"b" * 200})
        (tmp_path / "B.bak").write_bytes(b"b" * 200)
        engine = make_engine(client)

        downloaded = engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert downloaded == [os.path.join(str(tmp_path), "A.bak")]
        assert client.get_calls == ["A.bak"]
        assert (tmp_path / "A.bak").read_bytes() == b"a" * 100
        stats = engine.last_stats
        assert (stats.downloaded, stats.skipped, stats.failed) == (1, 1, 0)
        assert stats.downloaded_bytes == 100
        assert stats.skipped_bytes == 200

    def test_size_mismatch_triggers_redownload(self, tmp_path):
        client = FakeTransferClient({"A.bak": b"a" * 200})
        (tmp_path / "A.bak").write_bytes(b"a" * 150)

        downloaded = make_engine(client).synchronize(REMOTE_DIR, str(tmp_path))

        assert len(downloaded) == 1
        assert (tmp_path / "A.bak").stat().st_size == 200

    def test_zero_byte_local_file_is_redownloaded(self, tmp_path):
        client = FakeTransferClient({"A.bak": b"a" * 64})
        (tmp_path / "A.bak").write_bytes(b"")

        make_engine(client).synchronize(REMOTE_DIR, str(tmp_path))

        assert client.get_calls == ["A.bak"]
        assert (tmp_path / "A.bak").stat().st_size == 64

    def test_filters_extension_and_directories(self, tmp_path):
        client = FakeTransferClient({"C.BAK": b"c" * 10, "notes.txt": b"n" * 10})
        client.directories = ["archive.bak"]

        engine = make_engine(client)

        downloaded = engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert client.get_calls == ["C.BAK"]
        assert downloaded == [os.path.join(str(tmp_path), "C.BAK")]
        assert engine.last_stats.total == 1

    def test_empty_remote_directory(self, tmp_path):
        client = FakeTransferClient()
        engine = make_engine(client)

        assert engine.synchronize(REMOTE_DIR, str(tmp_path)) == []
        assert engine.last_stats.total == 0
        assert client.end_calls == 1

    def test_partial_write_never_reaches_final_path(self, tmp_path):
        """Test that a failed transfer leaves no file at the final path."""
        client = FakeTransferClient({"A.bak": b"a" * 200})
        client.behaviours["A.bak"] = fail_after_partial_write(50)
        engine = make_engine(client)

        downloaded = engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert downloaded == []
        assert not (tmp_path / "A.bak").exists()
        temp_file = tmp_path / ("A.bak" + TEMP_SUFFIX)
        assert temp_file.exists()
        assert temp_file.stat().st_size == 50
        assert engine.last_stats.failed == 1

    def test_short_download_never_reaches_final_path(self, tmp_path):
        """Test that a transfer ending early without an error is not accepted."""

        def short_transfer(client, name, local_path, cancel_event):
            with open(local_path, "wb") as f:
                f.write(client.files[name][:50])

        client = FakeTransferClient({"A.bak": b"a" * 200})
        client.behaviours["A.bak"] = short_transfer
        engine = make_engine(client)

        downloaded = engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert downloaded == []
        assert not (tmp_path / "A.bak").exists()
        assert (tmp_path / ("A.bak" + TEMP_SUFFIX)).stat().st_size == 50
        assert (engine.last_stats.downloaded, engine.last_stats.failed) == (0, 1)

    def test_stale_temp_file_is_discarded_on_retry(self, tmp_path):
        client = FakeTransferClient({"A.bak": b"a" * 200})
        (tmp_path / ("A.bak" + TEMP_SUFFIX)).write_bytes(b"a" * 50)

        downloaded = make_engine(client).synchronize(REMOTE_DIR, str(tmp_path))

        assert len(downloaded) == 1
        assert (tmp_path / "A.bak").read_bytes() == b"a" * 200
        assert not (tmp_path / ("A.bak" + TEMP_SUFFIX)).exists()

    def test_zero_byte_download_counts_as_failure(self, tmp_path):
        client = FakeTransferClient({"A.bak": b"a" * 100})
        client.behaviours["A.bak"] = write_nothing
        engine = make_engine(client)

        downloaded = engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert downloaded == []
        assert engine.last_stats.failed == 1
        assert not (tmp_path / "A.bak").exists()
        assert not (tmp_path / ("A.bak" + TEMP_SUFFIX)).exists()

    def test_timeout_cancels_transfer_and_reconnects(self, tmp_path):
        """Test that a hung transfer is aborted and the batch continues."""
        client = FakeTransferClient({"A.bak": b"a" * 100, "B.bak": b"b" * 100})
        client.behaviours["A.bak"] = hang_until_cancelled()
        engine = make_engine(client, transfer_timeout=0.2, heartbeat_interval=0.05)

        downloaded = engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert client.abort_calls == 1
        assert client.connect_calls == 2
        assert downloaded == [os.path.join(str(tmp_path), "B.bak")]
        assert not (tmp_path / "A.bak").exists()
        assert engine.last_stats.failed == 1
        assert engine.last_stats.downloaded == 1

    def test_failed_reconnect_fails_remaining_files(self, tmp_path):
        client = FakeTransferClient({"A.bak": b"a" * 100, "B.bak": b"b" * 100})
        client.behaviours["A.bak"] = hang_until_cancelled()
        engine = make_engine(client, transfer_timeout=0.2, heartbeat_interval=0.05)

        original_abort = client.abort

        def abort_and_break_server():
            original_abort()
            client.fail_connect = True

        client.abort = abort_and_break_server

        downloaded = engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert downloaded == []
        assert engine.last_stats.failed == 2
        assert client.get_calls == ["A.bak"]

    def test_connect_failure_propagates_and_closes(self, tmp_path):
        client = FakeTransferClient({"A.bak": b"a"})
        client.fail_connect = True

        with pytest.raises(ConnectionError):
            make_engine(client).synchronize(REMOTE_DIR, str(tmp_path))

        assert client.end_calls == 1
        assert client.get_calls == []

    def test_missing_directories_raise_configuration_error(self, tmp_path):
        engine = make_engine(FakeTransferClient())

        with pytest.raises(ConfigurationError):
            engine.synchronize("", str(tmp_path))
        with pytest.raises(ConfigurationError):
            engine.synchronize(REMOTE_DIR, "")

    def test_unwritable_directory_aborts_before_connecting(self, tmp_path):
        client = FakeTransferClient({"A.bak": b"a"})
        engine = make_engine(client)

        with patch(
            "enquiry_sync.core.sync_engine.open",
            side_effect=PermissionError("Access is denied"),
            create=True,
        ):
            with pytest.raises(LocalStorageError):
                engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert client.connect_calls == 0

    def test_heartbeat_reports_progress(self, tmp_path):
        """Test that heartbeat observations are delivered during a slow transfer."""
        observations = []

        def slow_transfer(client, name, local_path, cancel_event):
            with open(local_path, "wb") as f:
                f.write(b"a" * 10)
                f.flush()
                time.sleep(0.3)
                f.write(b"a" * 90)

        client = FakeTransferClient({"A.bak": b"a" * 100})
        client.behaviours["A.bak"] = slow_transfer
        engine = make_engine(client, heartbeat_interval=0.05, progress_callback=observations.append)

        engine.synchronize(REMOTE_DIR, str(tmp_path))

        assert observations
        assert all(o.file_name == "A.bak" and o.expected_size == 100 for o in observations)
        assert not any(t.name.startswith("heartbeat-") for t in threading.enumerate())


class TestFromSettings:
    def test_incomplete_sftp_settings(self):
        sftp = SimpleNamespace(is_complete=lambda: False)
        job = SimpleNamespace(
            file_extension=".xml", transfer_timeout=300, heartbeat_interval=5, summary_every=50
        )

        with pytest.raises(ConfigurationError):
            SyncEngine.from_settings(sftp, job)


class TestTransferOperation:
    def test_result_reraises_target_error(self):
        def target(cancel_event):
            raise OSError("boom")

        operation = TransferOperation(target, "x").start()
        assert operation.wait(1)
        with pytest.raises(OSError, match="boom"):
            operation.result()

    def test_cancel_sets_event_and_calls_hook(self):
        aborted = []

        def target(cancel_event):
            cancel_event.wait(5)
            raise TransferCancelledError("cancelled")

        operation = TransferOperation(target, "x", on_cancel=lambda: aborted.append(True)).start()
        assert not operation.wait(0.05)
        assert operation.cancel(grace_period=2)
        assert aborted == [True]
        with pytest.raises(TransferCancelledError):
            operation.result()


class TestProgress:
    def test_percent(self):
        assert TransferProgress("a", 1.0, 50, 200).percent == 25.0
        assert TransferProgress("a", 1.0, 50, 0).percent is None

    def test_heartbeat_stops_on_exit(self, tmp_path):
        path = tmp_path / "watched"
        path.write_bytes(b"abc")
        observations = []

        with ProgressHeartbeat("watched", str(path), 6, 0.02, observations.append) as heartbeat:
            time.sleep(0.15)
            assert heartbeat.is_running

        assert not heartbeat.is_running
        assert observations[0].bytes_transferred == 3
        assert observations[0].percent == 50.0

    def test_stats_summary(self):
        stats = SyncStats(total=3, downloaded=1, downloaded_bytes=1024, skipped=1, failed=1)
        assert stats.processed == 3
        assert "3/3 processed" in stats.summary()
        assert "1.00 KB" in stats.summary()
