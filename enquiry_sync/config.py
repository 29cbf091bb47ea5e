"""
Configuration settings for the enquiry sync service.

This module defines all configuration settings using Pydantic classes.
It handles environment variable loading and validation.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from enquiry_sync.core.db_gateway import DatabaseProfile

# Load environment variables
load_dotenv()

DOCUMENTS_DIR = Path.home() / "Documents"


class MSSQLSettings(BaseSettings):
    """SQL Server connection settings.

    Attributes:
        server: SQL Server hostname or IP address
        port: SQL Server port number
        user: SQL Server authentication username
        password: SQL Server authentication password
        database: Database holding the enquiry tables
        secondary_database: Database used when a caller asks for the override
        timeout: Connection and query timeout in seconds
        connect_attempts: Attempts made to open a connection before giving up
        retry_delay: Delay between connection attempts in seconds
    """
    server: str = Field(default="", description="MSSQL server address")
    port: int = Field(default=1433, description="MSSQL server port")
    user: str = Field(default="", description="MSSQL username")
    password: Optional[SecretStr] = Field(default=None, description="MSSQL password")
    database: str = Field(default="", description="MSSQL database name")
    secondary_database: str = Field(
        default="DOLPHINDATA", description="Database used for override connections"
    )
    timeout: int = Field(default=60, description="Connection timeout in seconds")
    connect_attempts: int = Field(default=3, description="Connection attempts")
    retry_delay: float = Field(default=5, description="Delay between attempts in seconds")

    model_config = SettingsConfigDict(
        env_prefix="MSSQL_", extra="ignore", env_file=".env"
    )

    def is_complete(self) -> bool:
        """Return True when every value needed to connect is present."""
        return bool(self.server and self.user and self.password and self.database)

    def to_profile(self, database: Optional[str] = None) -> DatabaseProfile:
        """Build the connection profile, optionally overriding the database.

        Args:
            database: Database name to use instead of the configured one

        Returns:
            DatabaseProfile: Immutable description of the connection target
        """
        return DatabaseProfile(
            server=self.server,
            port=self.port,
            user=self.user,
            password=self.password.get_secret_value() if self.password else "",
            database=database or self.database,
            timeout=self.timeout,
        )


class SFTPSettings(BaseSettings):
    """SFTP server settings.

    Attributes:
        host: SFTP hostname
        port: SFTP port
        username: Login name
        password: Login password, used when no private key is configured
        private_key_path: Path to a private key file
        timeout: Connect, banner and auth timeout in seconds
    """
    host: str = Field(default="", description="SFTP server address")
    port: int = Field(default=22, description="SFTP server port")
    username: str = Field(default="", description="SFTP username")
    password: Optional[SecretStr] = Field(default=None, description="SFTP password")
    private_key_path: Optional[str] = Field(default=None, description="Private key file")
    timeout: float = Field(default=30.0, description="Connection timeout in seconds")

    model_config = SettingsConfigDict(
        env_prefix="SFTP_", extra="ignore", env_file=".env"
    )

    def is_complete(self) -> bool:
        """Return True when host, username and a credential are present."""
        return bool(
            self.host and self.username and (self.password or self.private_key_path)
        )


class BackupSettings(BaseSettings):
    """Backup download settings.

    Attributes:
        remote_dir: Remote directory holding the backup files
        local_dir: Local directory the backups are synchronized into
        file_extension: Extension of the files to download
        transfer_timeout: Maximum duration of a single file transfer in seconds
        heartbeat_interval: Seconds between progress observations during a transfer
        summary_every: Emit a progress summary after this many files
    """
    remote_dir: str = Field(default="/Database_Download", description="Remote backup directory")
    local_dir: str = Field(
        default=str(DOCUMENTS_DIR / "DolphinBackups"),
        description="Local backup directory",
    )
    file_extension: str = Field(default=".bak", description="Backup file extension")
    transfer_timeout: float = Field(default=7200, description="Per-file timeout in seconds")
    heartbeat_interval: float = Field(default=15, description="Heartbeat interval in seconds")
    summary_every: int = Field(default=5, description="Files between summaries")

    model_config = SettingsConfigDict(
        env_prefix="BACKUP_", extra="ignore", env_file=".env"
    )


class EnquirySettings(BaseSettings):
    """Enquiry payload download and ingestion settings.

    Attributes:
        remote_dir: Remote directory holding the travel folder XML files
        local_dir: Local directory the XML files are synchronized into and watched
        file_extension: Extension of the enquiry payload files
        workers: Maximum number of files ingested concurrently
        transfer_timeout: Maximum duration of a single file transfer in seconds
        heartbeat_interval: Seconds between progress observations during a transfer
        summary_every: Emit a progress summary after this many files
    """
    remote_dir: str = Field(default="/Enquiries", description="Remote enquiry directory")
    local_dir: str = Field(
        default=str(DOCUMENTS_DIR / "DolphinEnquiries" / "xml"),
        description="Local enquiry directory",
    )
    file_extension: str = Field(default=".xml", description="Enquiry file extension")
    workers: int = Field(default=4, description="Concurrent ingestion workers")
    transfer_timeout: float = Field(default=300, description="Per-file timeout in seconds")
    heartbeat_interval: float = Field(default=5, description="Heartbeat interval in seconds")
    summary_every: int = Field(default=50, description="Files between summaries")

    model_config = SettingsConfigDict(
        env_prefix="ENQUIRY_", extra="ignore", env_file=".env"
    )


class LoggingSettings(BaseSettings):
    """Logging configuration settings.

    Attributes:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        directory: Directory to store log files
        max_size_mb: Maximum size of log file before rotation
        backup_count: Number of rotated log files to keep
        json_format: Whether to use JSON formatted logs
        audit_backup_days: Number of daily ingestion audit files to keep
    """
    level: str = Field(default="INFO", description="Logging level")
    directory: str = Field(default="logs", description="Log directory")
    max_size_mb: int = Field(default=10, description="Max log file size in MB")
    backup_count: int = Field(default=5, description="Number of log backups to keep")
    json_format: bool = Field(default=True, description="Use JSON formatted logs")
    audit_backup_days: int = Field(default=30, description="Daily audit files to keep")

    model_config = SettingsConfigDict(
        env_prefix="LOG_", extra="ignore", env_file=".env"
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate that the log level is one of the supported values."""
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"Log level must be one of: {', '.join(allowed_levels)}")
        return v.upper()


class AppSettings(BaseSettings):
    """Application settings.

    Attributes:
        polling_interval: Seconds between synchronization cycles
        run_once: Run a single cycle and exit instead of monitoring
        mssql: SQL Server connection settings
        sftp: SFTP server settings
        backup: Backup download settings
        enquiry: Enquiry download and ingestion settings
        logging: Logging configuration settings
    """
    polling_interval: float = Field(
        default=300.0, description="Seconds between synchronization cycles"
    )
    run_once: bool = Field(default=False, description="Run a single cycle and exit")

    # Component settings
    mssql: MSSQLSettings = Field(default_factory=MSSQLSettings)
    sftp: SFTPSettings = Field(default_factory=SFTPSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    enquiry: EnquirySettings = Field(default_factory=EnquirySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="APP_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration dictionary."""
        level = self.logging.level
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                },
                "json": {
                    "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                },
                "audit": {"format": "%(asctime)s - %(message)s", "datefmt": "%H:%M:%S"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": level,
                },
                "file": {
                    "class": "logging.handlers.RotatingFileHandler",
                    "filename": f"{self.logging.directory}/enquiry_sync.log",
                    "maxBytes": self.logging.max_size_mb * 1024 * 1024,
                    "backupCount": self.logging.backup_count,
                    "formatter": "json" if self.logging.json_format else "standard",
                    "level": level,
                },
                "audit": {
                    "class": "logging.handlers.TimedRotatingFileHandler",
                    "filename": f"{self.logging.directory}/ingestion_audit.txt",
                    "when": "midnight",
                    "backupCount": self.logging.audit_backup_days,
                    "formatter": "audit",
                    "level": "INFO",
                },
            },
            "loggers": {
                "": {"handlers": ["console", "file"], "level": level},
                "enquiry_sync.audit": {
                    "handlers": ["audit"],
                    "level": "INFO",
                    "propagate": True,
                },
            },
        }


# Instantiate settings
settings = AppSettings()
