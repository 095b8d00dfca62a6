"""Custom exceptions for LogProbe."""

from typing import Optional


class LogProbeException(Exception):
    """Base exception for LogProbe."""
    pass


class InvalidInputError(LogProbeException, ValueError):
    """Caller supplied an invalid argument. Raised before any backend call."""
    pass


class ConfigurationError(LogProbeException):
    """Required connection settings are missing."""
    pass


class RemoteQueryError(LogProbeException):
    """The log backend rejected or failed to answer a query."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
