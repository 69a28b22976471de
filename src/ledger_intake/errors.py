"""
Exception taxonomy for the import pipeline.

- ConfigurationError: no provider credentials, OCR engine missing
- UnavailableError: the requested extraction path cannot run right now
- ExtractionTimeoutError: an extraction call exceeded its time budget
- ExtractionError: a provider failed or returned something unparseable
- PersistenceError: the durable store or the ledger could not be reached
- UnsupportedFileError: the file type has no extraction path

Messages are written to be shown to the user as-is.
"""


class LedgerIntakeError(Exception):
    """Base exception for all pipeline errors."""

    pass


class ConfigurationError(LedgerIntakeError):
    """Raised when a path cannot run because it is not configured."""

    pass


class UnavailableError(LedgerIntakeError):
    """Raised when no extractor is able to serve the request."""

    pass


class ExtractionTimeoutError(LedgerIntakeError, TimeoutError):
    """Raised when an extraction call exceeds its budget."""

    def __init__(self, message: str, timeout_seconds: float | None = None):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class ExtractionError(LedgerIntakeError):
    """Raised when a provider fails or returns a malformed response."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class PersistenceError(LedgerIntakeError):
    """Raised when the durable store or the ledger rejects an operation."""

    pass


class UnsupportedFileError(LedgerIntakeError):
    """Raised for file types that have no extraction path."""

    pass
