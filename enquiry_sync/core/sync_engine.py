"""
Remote-to-local file synchronization.

Downloads every remote file with the configured extension that is not
already present locally at the same size. Each download goes to a
``.downloading`` sibling first and is renamed into place only after it
completed and is non-empty, so a file at its final path is always whole.
"""

import logging
import os
import posixpath
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from enquiry_sync.core.transfer_client import RemoteEntry, TransferClient
from enquiry_sync.exceptions import (
    ConfigurationError,
    IntegrityError,
    LocalStorageError,
    TransferError,
    TransferTimeoutError,
)
from enquiry_sync.utils import format_bytes, format_duration, format_rate

# Configure logging
logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".downloading"


@dataclass(frozen=True)
class TransferProgress:
    """A heartbeat observation of a running transfer."""

    file_name: str
    elapsed: float
    bytes_transferred: int
    expected_size: int

    @property
    def percent(self) -> Optional[float]:
        if self.expected_size <= 0:
            return None
        return min(100.0, self.bytes_transferred * 100.0 / self.expected_size)


@dataclass
class SyncStats:
    """Running counters for one synchronization run."""

    total: int = 0
    downloaded: int = 0
    downloaded_bytes: int = 0
    skipped: int = 0
    skipped_bytes: int = 0
    failed: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def processed(self) -> int:
        return self.downloaded + self.skipped + self.failed

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def summary(self) -> str:
        return (
            f"{self.processed}/{self.total} processed - "
            f"downloaded {self.downloaded} ({format_bytes(self.downloaded_bytes)}), "
            f"skipped {self.skipped} ({format_bytes(self.skipped_bytes)}), "
            f"failed {self.failed} in {format_duration(self.elapsed)}"
        )


def _file_size(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


class ProgressHeartbeat:
    """Background thread reporting the growth of a file at a fixed interval.

    The thread watches the file on disk rather than hooking into the
    transfer, so it keeps reporting even while the transfer call blocks.
    Use as a context manager; leaving the block stops and joins the thread.
    """

    def __init__(
        self,
        file_name: str,
        watch_path: str,
        expected_size: int,
        interval: float,
        callback: Optional[Callable[[TransferProgress], None]] = None,
    ):
        self.file_name = file_name
        self.watch_path = watch_path
        self.expected_size = expected_size
        self.interval = interval
        self.callback = callback
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started_at = 0.0

    def _observe(self) -> TransferProgress:
        return TransferProgress(
            file_name=self.file_name,
            elapsed=time.monotonic() - self._started_at,
            bytes_transferred=_file_size(self.watch_path),
            expected_size=self.expected_size,
        )

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            progress = self._observe()
            percent = progress.percent
            percent_text = f" ({percent:.1f}%)" if percent is not None else ""
            logger.info(
                f"[heartbeat] {self.file_name}: {format_bytes(progress.bytes_transferred)}"
                f" of {format_bytes(self.expected_size)}{percent_text}"
                f" after {format_duration(progress.elapsed)}"
            )
            if self.callback:
                try:
                    self.callback(progress)
                except Exception as e:
                    logger.error(f"Error in progress callback for {self.file_name}: {e}")

    def start(self) -> None:
        self._started_at = time.monotonic()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{self.file_name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def __enter__(self) -> "ProgressHeartbeat":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class TransferOperation:
    """A transfer running on its own thread that can be awaited or cancelled.

    ``target`` receives a cancel event and must stop once it is set.
    ``on_cancel`` tears down whatever the target may be blocked on (the
    network transport); it is called after the event is set.
    """

    def __init__(
        self,
        target: Callable[[threading.Event], None],
        name: str,
        on_cancel: Optional[Callable[[], None]] = None,
    ):
        self.name = name
        self.cancel_event = threading.Event()
        self._target = target
        self._on_cancel = on_cancel
        self._error: Optional[BaseException] = None
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"transfer-{name}", daemon=True)

    def _run(self) -> None:
        try:
            self._target(self.cancel_event)
        except BaseException as e:
            self._error = e
        finally:
            self._done.set()

    def start(self) -> "TransferOperation":
        self._thread.start()
        return self

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the operation to settle; return False on timeout."""
        return self._done.wait(timeout)

    def cancel(self, grace_period: float = 10.0) -> bool:
        """Cancel the operation and wait for its thread to exit.

        Returns:
            bool: True if the thread exited within the grace period
        """
        self.cancel_event.set()
        if self._on_cancel is not None:
            try:
                self._on_cancel()
            except Exception as e:
                logger.warning(f"Error aborting transfer {self.name}: {e}")
        self._thread.join(grace_period)
        stopped = not self._thread.is_alive()
        if not stopped:
            logger.error(f"Transfer thread for {self.name} did not stop after cancellation")
        return stopped

    def result(self) -> None:
        """Re-raise the exception raised by the target, if any."""
        if not self._done.is_set():
            raise TransferError(f"Transfer {self.name} has not finished")
        if self._error is not None:
            raise self._error


class SyncEngine:
    """Synchronizes one remote directory into one local directory.

    Attributes:
        client: Transfer client used for listing and downloading
        file_extension: Only remote files ending with this suffix are synchronized
        transfer_timeout: Maximum duration of a single file transfer in seconds
        heartbeat_interval: Seconds between progress observations
        summary_every: Emit a progress summary after this many files
        progress_callback: Optional receiver of heartbeat observations
    """

    def __init__(
        self,
        client: TransferClient,
        file_extension: str = ".bak",
        transfer_timeout: float = 7200,
        heartbeat_interval: float = 15,
        summary_every: int = 5,
        progress_callback: Optional[Callable[[TransferProgress], None]] = None,
    ):
        self.client = client
        self.file_extension = file_extension.lower()
        self.transfer_timeout = transfer_timeout
        self.heartbeat_interval = heartbeat_interval
        self.summary_every = max(1, summary_every)
        self.progress_callback = progress_callback
        self.last_stats: Optional[SyncStats] = None
        self._needs_reconnect = False

    @classmethod
    def from_settings(cls, sftp_settings: Any, job_settings: Any, **kwargs) -> "SyncEngine":
        """Build an engine from ``SFTPSettings`` and a backup/enquiry settings block.

        Raises:
            ConfigurationError: If the SFTP settings are incomplete
        """
        return cls(
            client=TransferClient.from_settings(sftp_settings),
            file_extension=job_settings.file_extension,
            transfer_timeout=job_settings.transfer_timeout,
            heartbeat_interval=job_settings.heartbeat_interval,
            summary_every=job_settings.summary_every,
            **kwargs,
        )

    def ensure_writable(self, local_dir: str) -> None:
        """Check that files can be created and removed in ``local_dir``.

        Raises:
            LocalStorageError: If the directory cannot be created or written to
        """
        marker = os.path.join(local_dir, f".write-test-{uuid.uuid4().hex}")
        try:
            os.makedirs(local_dir, exist_ok=True)
            with open(marker, "w") as f:
                f.write("ok")
            os.remove(marker)
        except OSError as e:
            raise LocalStorageError(
                f"Local directory {local_dir} is not writable (permissions or "
                f"antivirus interference): {e}"
            ) from e

    def list_candidates(self, remote_dir: str) -> List[RemoteEntry]:
        """List regular remote files with the configured extension."""
        return [
            entry
            for entry in self.client.list(remote_dir)
            if entry.is_file and entry.name.lower().endswith(self.file_extension)
        ]

    def synchronize(self, remote_dir: str, local_dir: str) -> List[str]:
        """Download new or changed remote files into ``local_dir``.

        Args:
            remote_dir: Remote directory to synchronize from
            local_dir: Local directory to synchronize into

        Returns:
            List[str]: Local paths of the files downloaded during this run

        Raises:
            ConfigurationError: If a directory is not configured
            LocalStorageError: If ``local_dir`` is not writable
            ConnectionError: If the remote server cannot be reached
        """
        if not remote_dir or not local_dir:
            raise ConfigurationError("Remote and local directories must both be configured")

        self.ensure_writable(local_dir)

        stats = SyncStats()
        self.last_stats = stats
        downloaded: List[str] = []
        self._needs_reconnect = False

        try:
            self.client.connect()
            candidates = self.list_candidates(remote_dir)
            stats.total = len(candidates)

            if not candidates:
                logger.info(f"No {self.file_extension} files found in {remote_dir}")
                return downloaded

            logger.info(f"Found {len(candidates)} {self.file_extension} files in {remote_dir}")

            for index, entry in enumerate(candidates, start=1):
                if self._needs_reconnect and not self._reconnect():
                    stats.failed += len(candidates) - index + 1
                    logger.error(
                        f"Giving up on {len(candidates) - index + 1} remaining files after "
                        f"failing to reconnect to the SFTP server"
                    )
                    break

                local_path = self._sync_entry(entry, remote_dir, local_dir, stats)
                if local_path:
                    downloaded.append(local_path)

                if index % self.summary_every == 0 and index < len(candidates):
                    logger.info(f"Progress: {stats.summary()}")

            return downloaded
        finally:
            logger.info(f"Sync of {remote_dir} finished: {stats.summary()}")
            try:
                self.client.end()
            except Exception as e:
                logger.warning(f"Error closing SFTP connection: {e}")

    def _reconnect(self) -> bool:
        try:
            self.client.end()
        except Exception as e:
            logger.warning(f"Error closing aborted SFTP connection: {e}")
        try:
            self.client.connect()
        except Exception as e:
            logger.error(f"SFTP reconnect failed: {e}")
            return False
        self._needs_reconnect = False
        return True

    def _sync_entry(
        self, entry: RemoteEntry, remote_dir: str, local_dir: str, stats: SyncStats
    ) -> Optional[str]:
        """Synchronize a single remote file; return its local path if downloaded."""
        safe_name = os.path.basename(entry.name)
        remote_path = posixpath.join(remote_dir, safe_name)
        local_path = os.path.join(local_dir, safe_name)
        temp_path = local_path + TEMP_SUFFIX

        local_size = _file_size(local_path) if os.path.isfile(local_path) else None
        if local_size is not None and local_size == entry.size and local_size > 0:
            logger.info(f"Skipping (already downloaded): {local_path}")
            stats.skipped += 1
            stats.skipped_bytes += local_size
            return None
        if local_size is not None:
            logger.info(
                f"Local size {local_size} differs from remote size {entry.size}, "
                f"re-downloading {safe_name}"
            )

        started = time.monotonic()
        try:
            if os.path.exists(temp_path):
                logger.info(f"Removing stale temporary file: {temp_path}")
                os.remove(temp_path)

            logger.info(
                f"Downloading {remote_path} -> {local_path} ({format_bytes(entry.size)})"
            )
            self._download(safe_name, remote_path, temp_path, entry.size)

            size = _file_size(temp_path)
            if size == 0:
                raise IntegrityError(f"Download of {remote_path} produced an empty file")
            if entry.size > 0 and size != entry.size:
                raise IntegrityError(
                    f"Downloaded size {size} of {safe_name} differs from listed size {entry.size}"
                )

            os.replace(temp_path, local_path)
        except Exception as e:
            stats.failed += 1
            self._cleanup_temp(temp_path)
            logger.error(f"Failed downloading {remote_path}: {e}")
            return None

        elapsed = time.monotonic() - started
        stats.downloaded += 1
        stats.downloaded_bytes += size
        logger.info(
            f"Downloaded {safe_name}: {format_bytes(size)} in {format_duration(elapsed)} "
            f"({format_rate(size, elapsed)})"
        )
        return local_path

    def _download(self, name: str, remote_path: str, temp_path: str, expected_size: int) -> None:
        """Run one transfer raced against the timeout, with a heartbeat alongside."""
        operation = TransferOperation(
            target=lambda cancel_event: self.client.get(remote_path, temp_path, cancel_event),
            name=name,
            on_cancel=self.client.abort,
        )
        with ProgressHeartbeat(
            name, temp_path, expected_size, self.heartbeat_interval, self.progress_callback
        ):
            operation.start()
            if not operation.wait(self.transfer_timeout):
                self._needs_reconnect = True
                operation.cancel()
                raise TransferTimeoutError(
                    f"Transfer of {remote_path} exceeded {format_duration(self.transfer_timeout)}"
                )
        operation.result()

    @staticmethod
    def _cleanup_temp(temp_path: str) -> None:
        if not os.path.exists(temp_path):
            return
        size = _file_size(temp_path)
        if size == 0:
            try:
                os.remove(temp_path)
            except OSError as e:
                logger.warning(f"Could not remove empty temporary file {temp_path}: {e}")
        else:
            logger.info(f"Keeping partial download for inspection: {temp_path} ({format_bytes(size)})")
