"""
Custom exception hierarchy for the Smart Ranch monitor backend.

Every error raised by the package inherits from RanchMonitorError, so the
API layer can map whole families of failures to HTTP responses while still
allowing narrow handling where recovery is possible.

Exception Hierarchy:
    RanchMonitorError (base)
    ├── StorageError
    │   ├── HistoryCorruptionError
    │   ├── HistoryReadError
    │   └── HistoryWriteError
    ├── VisionError
    │   ├── VisionProviderError
    │   └── VisionResponseParsingError
    ├── RequestValidationError
    │   └── ImagePayloadError
    └── ConfigurationError
"""

from typing import Any, Optional, Dict


class RanchMonitorError(Exception):
    """
    Base exception for all Smart Ranch monitor errors.

    Attributes:
        message: Human-readable error description
        details: Additional context (path, provider, field, etc.)
        cause: Original exception if this wraps another error
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        self.message = message
        self.details = details or {}
        self.cause = cause
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the exception message with details."""
        msg = self.message
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            msg = f"{msg} [{detail_str}]"
        if self.cause:
            msg = f"{msg} (caused by: {type(self.cause).__name__}: {self.cause})"
        return msg


# =============================================================================
# Storage Exceptions
# =============================================================================

class StorageError(RanchMonitorError):
    """Base exception for history persistence errors."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if path:
            details["path"] = path
        super().__init__(message, details=details, **kwargs)


class HistoryCorruptionError(StorageError):
    """
    Raised when the persisted history cannot be parsed into a valid state.

    HistoryStore.read() recovers from this locally and never lets it reach
    callers; it surfaces only from HistoryState.from_dict() and friends.
    """
    pass


class HistoryReadError(StorageError):
    """Raised when the history file exists but cannot be read from disk."""
    pass


class HistoryWriteError(StorageError):
    """
    Raised when the history file cannot be written.

    Examples:
        - Permission denied on the data directory
        - Disk full
        - Data directory removed underneath the process
    """
    pass


# =============================================================================
# Vision Provider Exceptions
# =============================================================================

class VisionError(RanchMonitorError):
    """Base exception for AI vision provider failures."""
    pass


class VisionProviderError(VisionError):
    """
    Raised when the vision provider call fails outright.

    Examples:
        - Non-2xx HTTP status from the remote endpoint
        - Network connectivity issues or timeouts
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        if status is not None:
            details["status"] = status
        super().__init__(message, details=details, **kwargs)


class VisionResponseParsingError(VisionError):
    """Raised when a provider response cannot be parsed into an analysis payload."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        raw_response: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        if raw_response:
            # Truncate to keep log lines readable
            details["raw_response"] = raw_response[:200] + "..." if len(raw_response) > 200 else raw_response
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# Request Validation Exceptions
# =============================================================================

class RequestValidationError(RanchMonitorError):
    """Raised when an API request is malformed."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


class ImagePayloadError(RequestValidationError):
    """Raised when the submitted image is missing, malformed or too large."""
    pass


# =============================================================================
# Configuration Exceptions
# =============================================================================

class ConfigurationError(RanchMonitorError):
    """
    Raised when configuration is invalid or incomplete.

    Examples:
        - Unknown AI_PROVIDER value
        - Provider selected without its endpoint or key
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected:
            details["expected"] = expected
        super().__init__(message, details=details, **kwargs)
