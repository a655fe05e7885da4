"""
Exception types raised by the export engine.
"""


class ExportError(Exception):
    """Base class for export engine errors."""


class ExportConfigurationError(ExportError, ValueError):
    """
    Raised for problems detected before the job record exists.

    Malformed filters, unsupported formats, unknown schemas and array fields
    without a child definition all end up here.
    """


class UnknownSchemaError(ExportConfigurationError):
    """No descriptor is registered under the requested name."""


class ExportCancelledError(ExportError):
    """Raised between batches when a job was asked to stop."""


class ExportIntegrityError(ExportError):
    """Raised when the materialized view still holds rows after writing."""


class RowSerializationError(ExportError):
    """A single row could not be written in the target format."""

    def __init__(self, message: str, row_number: int | None = None):
        super().__init__(message)
        self.row_number = row_number


class DecryptionError(ExportError):
    """Raised when an encrypted artifact cannot be read back."""


class ExportNotReadyError(ExportError):
    """Raised when an artifact is requested before the job succeeded."""
