"""Error taxonomy for the upload, versioning and finalize pipeline."""

from typing import Any, Dict, Optional


class BackupServerError(Exception):
    """
    Base class for all errors raised by the backup core.

    ``status_code`` is the HTTP status the API layer answers with and
    ``retryable`` tells the client whether resending can succeed.
    """
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BackupServerError):
    """
    Raised when a required field is missing or malformed.
    """
    status_code = 400


class SessionNotFound(BackupServerError):
    """
    Raised when an upload session is unknown, finalized or expired.
    """
    status_code = 404


class BackupNotFound(BackupServerError):
    """
    Raised when no backup exists for a (client, name, version) triple.
    """
    status_code = 404


class IncompleteUpload(BackupServerError):
    """
    Raised when finalize is attempted before every chunk arrived.
    """
    status_code = 409
    retryable = True


class AssemblyError(BackupServerError):
    """
    Raised when reassembly fails on I/O or on a size/checksum mismatch.
    """
    status_code = 500
    retryable = True


class VersionConflict(BackupServerError):
    """
    Raised when two backups would share the same version number.
    """
    status_code = 409
