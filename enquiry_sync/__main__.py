"""
Main entry point for the enquiry sync service.

This module initializes logging, validates configuration,
and starts the sync monitor.
"""

import logging.config
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from enquiry_sync.config import settings
from enquiry_sync.core.monitor import SyncMonitor
from enquiry_sync.exceptions import ConfigurationError


# Global variable to hold the monitor instance for graceful shutdown
monitor: Optional[SyncMonitor] = None


def signal_handler(sig, frame):
    """Handle termination signals for graceful shutdown.

    Args:
        sig: Signal number
        frame: Current stack frame
    """
    logger = logging.getLogger(__name__)
    logger.info(f"Received signal {sig}, shutting down gracefully...")

    if monitor:
        logger.info("Stopping sync monitor...")
        monitor.stop()

    logger.info("Enquiry sync shutdown complete")
    sys.exit(0)


def setup_directories():
    """Create required directories for the application."""
    Path(settings.logging.directory).mkdir(parents=True, exist_ok=True)
    os.makedirs(settings.backup.local_dir, exist_ok=True)
    os.makedirs(settings.enquiry.local_dir, exist_ok=True)


def log_startup_info():
    """Log startup information and configuration details."""
    logger = logging.getLogger(__name__)

    logger.info("-" * 50)
    logger.info("Enquiry Sync Starting")
    logger.info("-" * 50)

    logger.info(f"Version: {getattr(sys.modules['enquiry_sync'], '__version__', 'unknown')}")
    logger.info(f"Python version: {sys.version}")
    logger.info(f"SFTP server: {settings.sftp.host}:{settings.sftp.port}")
    logger.info(f"MSSQL server: {settings.mssql.server}:{settings.mssql.port}/{settings.mssql.database}")
    logger.info(f"Backups: {settings.backup.remote_dir} -> {settings.backup.local_dir}")
    logger.info(f"Enquiries: {settings.enquiry.remote_dir} -> {settings.enquiry.local_dir}")
    logger.info(f"Polling interval: {settings.polling_interval} seconds")
    logger.info(f"Run once: {settings.run_once}")
    logger.info(f"Log level: {settings.logging.level}")


def main():
    """Main entry point for the enquiry sync service."""
    global monitor

    setup_directories()

    logging.config.dictConfig(settings.get_logging_config())
    logger = logging.getLogger(__name__)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    log_startup_info()

    try:
        logger.info("Initializing sync monitor...")
        monitor = SyncMonitor(settings)

        # Blocks until interrupted unless run_once is set
        monitor.start()

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logger.error(f"Error running enquiry sync: {str(e)}")
        logger.exception("Full stack trace:")
        sys.exit(1)
    finally:
        if monitor:
            monitor.gateway.close()


if __name__ == "__main__":
    main()
