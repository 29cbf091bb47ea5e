"""
Synchronization and ingestion monitor.

Runs a synchronization cycle (backups, then enquiry payloads) on a fixed
interval and watches the local enquiry directory, ingesting every travel
folder file that appears in it.
"""

import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from enquiry_sync.core.db_gateway import DatabaseGateway
from enquiry_sync.core.ingestion import EnquiryIngestor
from enquiry_sync.core.sync_engine import TEMP_SUFFIX, SyncEngine
from enquiry_sync.exceptions import ConfigurationError, LocalStorageError

# Configure logging
logger = logging.getLogger(__name__)

MAX_TRACKED_FILES = 1024


class EnquiryFileHandler(FileSystemEventHandler):
    """Ingests enquiry payload files as they appear in a watched directory.

    Files arrive either by creation (copied in by an operator) or by the
    atomic rename that completes a download. A file is ingested once its
    size has stopped changing; a later modification of the same file
    (a copy that outlasted the stability wait) ingests it again.

    Attributes:
        ingestor: Ingestion engine used for each file
        file_extension: Only files with this suffix are ingested
        stability_timeout: Maximum seconds to wait for a file to stop growing
        stability_interval: Seconds between size checks
    """

    def __init__(
        self,
        ingestor: EnquiryIngestor,
        file_extension: str = ".xml",
        stability_timeout: float = 60,
        stability_interval: float = 2,
    ):
        super().__init__()
        self.ingestor = ingestor
        self.file_extension = file_extension.lower()
        self.stability_timeout = stability_timeout
        self.stability_interval = stability_interval
        # path -> (size, mtime) of the last ingested version, oldest first
        self._ingested: "OrderedDict[str, Tuple[int, int]]" = OrderedDict()
        self._lock = threading.Lock()

    def accepts(self, path: str) -> bool:
        name = os.path.basename(path).lower()
        if name.endswith(TEMP_SUFFIX) or name.startswith(".write-test-"):
            return False
        return name.endswith(self.file_extension)

    def _wait_for_file_stability(self, path: str) -> bool:
        """Wait for a file to stop changing in size.

        Returns:
            bool: True if the size settled, False on timeout or if the file vanished
        """
        start_time = time.monotonic()
        try:
            last_size = os.path.getsize(path)
        except OSError:
            return False

        while time.monotonic() - start_time < self.stability_timeout:
            time.sleep(self.stability_interval)
            try:
                current_size = os.path.getsize(path)
            except OSError as e:
                logger.warning(f"Error checking size of {path}: {e}")
                return False
            if current_size == last_size:
                return True
            logger.debug(f"File {path} size changed: {last_size} -> {current_size} bytes")
            last_size = current_size
        return False

    @staticmethod
    def _signature(path: str) -> Optional[Tuple[int, int]]:
        try:
            stat_result = os.stat(path)
        except OSError:
            return None
        return stat_result.st_size, stat_result.st_mtime_ns

    def _handle(self, path: str) -> None:
        if not self.accepts(path):
            logger.debug(f"Skipping file with unsupported extension: {path}")
            return
        if not os.path.isfile(path):
            return

        if not self._wait_for_file_stability(path):
            logger.warning(f"File {path} is still being modified, will be processed later")
            return

        signature = self._signature(path)
        with self._lock:
            if signature is None or self._ingested.get(path) == signature:
                return
            self._ingested[path] = signature
            self._ingested.move_to_end(path)
            while len(self._ingested) > MAX_TRACKED_FILES:
                self._ingested.popitem(last=False)

        logger.info(f"New enquiry file detected: {path}")
        self.ingestor.ingest_file(path)

    def on_created(self, event) -> None:
        if event.is_directory:
            return
        self._handle(event.src_path)

    def on_modified(self, event) -> None:
        if event.is_directory:
            return
        self._handle(event.src_path)

    def on_moved(self, event) -> None:
        if event.is_directory:
            return
        self._handle(event.dest_path)


class SyncMonitor:
    """Periodically synchronizes remote files and ingests enquiry payloads.

    Attributes:
        settings: Application settings
        gateway: Shared database gateway
        ingestor: Travel folder ingestion engine
        backup_engine: Sync engine for backup files
        enquiry_engine: Sync engine for enquiry payloads
        observer: Watchdog observer on the enquiry directory
        running: Whether the monitor loop is active
    """

    def __init__(
        self,
        settings: Any,
        gateway: Optional[DatabaseGateway] = None,
        ingestor: Optional[EnquiryIngestor] = None,
        backup_engine: Optional[SyncEngine] = None,
        enquiry_engine: Optional[SyncEngine] = None,
    ):
        """Initialize the monitor.

        Raises:
            ConfigurationError: If the SFTP or MSSQL settings are incomplete
        """
        self.settings = settings
        self.gateway = gateway or DatabaseGateway.from_settings(settings.mssql)
        self.ingestor = ingestor or EnquiryIngestor(self.gateway)
        self.backup_engine = backup_engine or SyncEngine.from_settings(
            settings.sftp, settings.backup
        )
        self.enquiry_engine = enquiry_engine or SyncEngine.from_settings(
            settings.sftp, settings.enquiry
        )
        self.handler = EnquiryFileHandler(self.ingestor, settings.enquiry.file_extension)
        self.observer = None
        self.running = False
        self._stop_event = threading.Event()

    def ingest_existing_files(self) -> List[bool]:
        """Ingest every payload already in the enquiry directory."""
        local_dir = self.settings.enquiry.local_dir
        logger.info(f"Checking for existing files in {local_dir}")
        try:
            names = sorted(os.listdir(local_dir))
        except OSError as e:
            logger.error(f"Error listing files in enquiry directory: {e}")
            return []

        paths = [
            os.path.join(local_dir, name)
            for name in names
            if self.handler.accepts(name) and os.path.isfile(os.path.join(local_dir, name))
        ]
        if not paths:
            return []
        return self.ingestor.ingest_files(paths, workers=self.settings.enquiry.workers)

    def run_cycle(self) -> Dict[str, List[str]]:
        """Run one synchronization cycle.

        Returns:
            Dict[str, List[str]]: Downloaded local paths per job

        Raises:
            ConfigurationError: If a job is misconfigured
            LocalStorageError: If a local directory is not writable
        """
        downloaded: Dict[str, List[str]] = {}
        jobs = [
            ("backup", self.backup_engine, self.settings.backup),
            ("enquiry", self.enquiry_engine, self.settings.enquiry),
        ]
        for name, engine, job in jobs:
            try:
                downloaded[name] = engine.synchronize(job.remote_dir, job.local_dir)
            except (ConfigurationError, LocalStorageError):
                raise
            except Exception as e:
                logger.error(f"{name.capitalize()} sync failed: {e}")
                downloaded[name] = []

        if self.observer is None and downloaded["enquiry"]:
            # Without a watcher nobody else picks the new payloads up.
            self.ingestor.ingest_files(downloaded["enquiry"], workers=self.settings.enquiry.workers)
        return downloaded

    def start(self) -> None:
        """Start monitoring.

        Blocks until ``stop`` is called, or returns after one cycle when
        ``run_once`` is set.
        """
        if self.running:
            logger.warning("Sync monitor is already running")
            return

        self.running = True
        self._stop_event.clear()
        os.makedirs(self.settings.enquiry.local_dir, exist_ok=True)

        self.ingestor.ensure_schema()
        self.ingest_existing_files()

        if not self.settings.run_once:
            logger.info(f"Starting file system observer for {self.settings.enquiry.local_dir}")
            self.observer = Observer()
            self.observer.schedule(self.handler, self.settings.enquiry.local_dir, recursive=False)
            self.observer.start()

        logger.info("Sync monitor running, press Ctrl+C to stop")
        try:
            while not self._stop_event.is_set():
                self.run_cycle()
                if self.settings.run_once:
                    break
                self._stop_event.wait(self.settings.polling_interval)
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
        except Exception as e:
            logger.error(f"Error in sync monitor: {e}")
            raise
        finally:
            self._shutdown_observer()
            self.running = False

    def _shutdown_observer(self) -> None:
        if self.observer is not None:
            self.observer.stop()
            if self.observer.is_alive():
                self.observer.join()
            self.observer = None

    def stop(self) -> None:
        """Stop the monitor gracefully."""
        if not self.running:
            return

        logger.info("Stopping sync monitor...")
        self._stop_event.set()
        self._shutdown_observer()
        self.running = False
        self.gateway.close()
        logger.info("Sync monitor stopped")
