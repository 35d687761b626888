"""
Custom Exception Classes for the Album Sync Application

This module defines custom exceptions for better error handling and
categorization of failures across the application. Every error carries a
machine-readable code and the HTTP status the query API reports it with.
"""

from typing import Any, Dict, Optional, Tuple


class AlbumSyncError(Exception):
    """Base exception for all Album Sync application errors."""

    code = "internal_error"
    status = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        """
        Render the error in the shape returned to API callers.

        Returns:
            Dict[str, Any]: ``{"error": {"code", "message", "details"?}}``
        """
        body: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = dict(self.details)
        return {"error": body}


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(AlbumSyncError):
    """Raised when configuration validation fails or required settings are missing."""
    code = "configuration_error"


# =============================================================================
# Request Errors
# =============================================================================

class ValidationError(AlbumSyncError):
    """Raised when query input is malformed. Never retried."""
    code = "validation_error"
    status = 400


class NotFoundError(AlbumSyncError):
    """Raised when an album, account or remote resource does not exist."""
    code = "not_found"
    status = 404


class AuthenticationError(AlbumSyncError):
    """Raised when no valid access token is available."""
    code = "unauthenticated"
    status = 401


# =============================================================================
# Remote Instance Errors
# =============================================================================

class RemoteError(AlbumSyncError):
    """Base exception for failures talking to the remote instance."""
    code = "upstream_error"
    status = 502


class RateLimitError(RemoteError):
    """Raised on HTTP 429. Drives scheduler backoff."""
    code = "rate_limited"
    status = 429

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None,
                 retry_after_seconds: Optional[float] = None):
        super().__init__(message, details)
        self.retry_after_seconds = retry_after_seconds
        if retry_after_seconds is not None:
            self.details.setdefault("retry_after", retry_after_seconds)


class UpstreamError(RemoteError):
    """Raised on network failure, timeout or a 5xx response."""
    code = "upstream_error"
    status = 502


# =============================================================================
# Database Errors
# =============================================================================

class DatabaseError(AlbumSyncError):
    """Base exception for database-related errors."""
    code = "database_error"


class QueryError(DatabaseError):
    """Raised when a database statement fails."""
    pass


def error_payload(error: BaseException) -> Tuple[int, Dict[str, Any]]:
    """
    Map any exception to an HTTP status and error payload.

    Args:
        error: The exception raised while serving a request.

    Returns:
        Tuple[int, Dict[str, Any]]: (status, payload). Unknown exceptions
        are reported as a generic 500 without leaking their message.
    """
    if isinstance(error, AlbumSyncError):
        return error.status, error.to_payload()
    return 500, {"error": {"code": "internal_error", "message": "Internal Server Error"}}
