"""
Exceptions raised by the enquiry sync service.
"""


class EnquirySyncError(Exception):
    """Base class for all service errors."""


class ConfigurationError(EnquirySyncError):
    """Raised when a remote or database profile is missing or incomplete."""


class LocalStorageError(EnquirySyncError):
    """Raised when the local download directory cannot be written to."""


class TransferError(EnquirySyncError):
    """Raised when a single file transfer fails."""


class TransferTimeoutError(TransferError):
    """Raised when a transfer exceeds its maximum duration."""


class TransferCancelledError(TransferError):
    """Raised inside a transfer that was cancelled before completion."""


class IntegrityError(EnquirySyncError):
    """Raised when an operation reports success but produced no data.

    Covers zero-byte downloads and ``OUTPUT INSERTED`` statements that
    returned no rows.
    """
